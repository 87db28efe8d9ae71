"""
The ``envlet`` console command.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click

from .. import __version__
from ..infrastructure.error_handler import DeployError
from ..infrastructure.logger import configure_logging
from ..models import DeployConfig
from .api import EnvironmentDeployer


DEFAULT_CACHE_DIR = "/tmp/envlet"


def _flag(value: bool) -> Optional[bool]:
    # unset flags must not override the config file
    return True if value else None


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-c", "--config", "config_file", type=click.Path(dir_okay=False, path_type=Path),
              help="Which config file to use.")
@click.option("-b", "--branch", help="Which git branch of the control repositories to deploy.")
@click.option("-e", "--environment", help="Which environment to deploy, including the source prefix.")
@click.option("--puppetfile", "puppetfile_mode", is_flag=True,
              help="Install all modules of the Puppetfile in the current directory.")
@click.option("--puppetfilelocation", type=click.Path(dir_okay=False, path_type=Path),
              default=Path("./Puppetfile"), show_default=True,
              help="Which Puppetfile to use in --puppetfile or --validate mode.")
@click.option("--moduledir", help="Module directory that overrides the moduledir of every Puppetfile.")
@click.option("--cachedir", envvar="ENVLET_CACHEDIR", default=DEFAULT_CACHE_DIR, show_default=True,
              help="Cache directory used in --puppetfile mode.")
@click.option("--validate", is_flag=True, help="Only validate the Puppetfile and exit.")
@click.option("--dryrun", is_flag=True, help="Only print what would be synced; exit 1 if anything would be.")
@click.option("--usecachefallback", is_flag=True, help="Use cached modules when a remote or the Forge fails.")
@click.option("--retrygitcommands", is_flag=True, help="Delete and re-clone a mirror whose update failed.")
@click.option("--maxworker", type=click.IntRange(min=1), help="Concurrent Git and Forge resolve workers.")
@click.option("--maxextractworker", type=click.IntRange(min=1), help="Concurrent extraction workers.")
@click.option("--checksum", is_flag=True, help="Verify MD5 checksums of Forge archives.")
@click.option("--force", is_flag=True, help="Purge module directories before syncing them.")
@click.option("--debug", is_flag=True, help="Log debug output.")
@click.option("--verbose", is_flag=True, help="Log verbose output.")
@click.option("--info", is_flag=True, help="Log info output.")
@click.option("--quiet", is_flag=True, help="Only log errors.")
@click.version_option(__version__, prog_name="envlet")
def main(config_file, branch, environment, puppetfile_mode, puppetfilelocation, moduledir, cachedir,
         validate, dryrun, usecachefallback, retrygitcommands, maxworker, maxextractworker,
         checksum, force, debug, verbose, info, quiet):
    """Deploy Puppet environments from control repositories, Git and the Forge."""

    overrides = {
        "dry_run": _flag(dryrun),
        "use_cache_fallback": _flag(usecachefallback),
        "retry_git_commands": _flag(retrygitcommands),
        "checksum_verification": _flag(checksum),
        "force": _flag(force),
        "max_workers": maxworker,
        "max_extract_workers": maxextractworker,
        "module_dir_override": moduledir,
    }

    try:
        if config_file is not None:
            config = DeployConfig.from_yaml(config_file, **overrides)
        elif puppetfile_mode or validate:
            config = DeployConfig(cache_dir=Path(cachedir),
                                  **{key: value for key, value in overrides.items() if value is not None})
        else:
            raise click.UsageError("Either --config, --puppetfile or --validate is required.")

        deployer = EnvironmentDeployer(config, verbose=debug or verbose)
        configure_logging(debug=debug, verbose=verbose, info=info, quiet=quiet)

        if validate:
            deployer.validate_manifest(puppetfilelocation)
            click.echo(f"Successfully validated Puppetfile {puppetfilelocation}")
            return

        if config_file is not None:
            result = asyncio.run(deployer.deploy(branch=branch, environment=environment))
        else:
            target_dir = puppetfilelocation.parent
            result = asyncio.run(deployer.deploy_manifest(puppetfilelocation, target_dir))

    except DeployError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)

    if config.dry_run and result.needs_sync:
        sys.exit(1)


if __name__ == "__main__":
    main()
