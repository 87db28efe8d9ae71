"""
Tests for the envlet command line options.
"""

from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from envlet import __version__
from envlet.interfaces.cli import main
from envlet.models import DeployResult, DeployStatus, SyncStatistics


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def no_cachedir_env(monkeypatch):
    monkeypatch.delenv("ENVLET_CACHEDIR", raising=False)


def completed(**counters):
    result = DeployResult(status=DeployStatus.COMPLETED, statistics=SyncStatistics(**counters))
    result.mark_completed()
    return result


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_mode_is_required(runner):
    result = runner.invoke(main, [])

    assert result.exit_code == 2
    assert "Either --config, --puppetfile or --validate is required" in result.output


def test_validate_ok(runner, tmp_path):
    puppetfile = tmp_path / "Puppetfile"
    puppetfile.write_text("forge.baseUrl 'https://forge.example.com'\nmod 'puppetlabs/ntp', '6.4.0'\n")

    result = runner.invoke(main, ["--validate", "--puppetfilelocation", str(puppetfile)])

    assert result.exit_code == 0
    assert f"Successfully validated Puppetfile {puppetfile}" in result.output


def test_validate_error(runner, tmp_path):
    puppetfile = tmp_path / "Puppetfile"
    puppetfile.write_text("mod 'foo', :git => 'https://example.com/foo.git', :branch => 'a', :tag => 'b'\n")

    result = runner.invoke(main, ["--validate", "--puppetfilelocation", str(puppetfile)])

    assert result.exit_code == 1
    assert "Error: Found conflicting git attributes" in result.output


def test_invalid_worker_count(runner):
    result = runner.invoke(main, ["--puppetfile", "--maxworker", "0"])
    assert result.exit_code == 2


def test_puppetfile_mode_passes_flags(runner, tmp_path):
    puppetfile = tmp_path / "Puppetfile"
    puppetfile.write_text("")

    with patch("envlet.interfaces.cli.EnvironmentDeployer") as deployer:
        deployer.return_value.deploy_manifest = AsyncMock(return_value=completed())
        result = runner.invoke(main, [
            "--puppetfile", "--puppetfilelocation", str(puppetfile),
            "--cachedir", str(tmp_path / "cache"), "--maxworker", "5", "--force", "--moduledir", "external",
        ])

    assert result.exit_code == 0, result.output
    config = deployer.call_args.args[0]
    assert config.cache_dir == tmp_path / "cache"
    assert config.max_workers == 5
    assert config.force is True
    assert config.dry_run is False
    assert config.module_dir_override == "external"
    deployer.return_value.deploy_manifest.assert_awaited_once_with(puppetfile, tmp_path)


def test_dryrun_exits_one_when_sync_needed(runner, tmp_path):
    puppetfile = tmp_path / "Puppetfile"
    puppetfile.write_text("")

    with patch("envlet.interfaces.cli.EnvironmentDeployer") as deployer:
        deployer.return_value.deploy_manifest = AsyncMock(return_value=completed(need_sync_forge_count=1))
        result = runner.invoke(main, ["--puppetfile", "--dryrun", "--puppetfilelocation", str(puppetfile),
                                      "--cachedir", str(tmp_path / "cache")])

    assert result.exit_code == 1
    assert deployer.call_args.args[0].dry_run is True


def test_dryrun_exits_zero_when_up_to_date(runner, tmp_path):
    puppetfile = tmp_path / "Puppetfile"
    puppetfile.write_text("")

    with patch("envlet.interfaces.cli.EnvironmentDeployer") as deployer:
        deployer.return_value.deploy_manifest = AsyncMock(return_value=completed())
        result = runner.invoke(main, ["--puppetfile", "--dryrun", "--puppetfilelocation", str(puppetfile),
                                      "--cachedir", str(tmp_path / "cache")])

    assert result.exit_code == 0


def test_config_mode(runner, tmp_path):
    config_file = tmp_path / "envlet.yaml"
    config_file.write_text(
        f":cachedir: '{tmp_path / 'cache'}'\n"
        "sources:\n"
        "  example:\n"
        "    remote: 'https://example.com/control.git'\n"
        f"    basedir: '{tmp_path / 'envs'}'\n"
        "use_cache_fallback: true\n"
    )

    with patch("envlet.interfaces.cli.EnvironmentDeployer") as deployer:
        deployer.return_value.deploy = AsyncMock(return_value=completed())
        result = runner.invoke(main, ["-c", str(config_file), "-b", "production", "--debug"])

    assert result.exit_code == 0, result.output
    config = deployer.call_args.args[0]
    # unset flags keep the config file values
    assert config.use_cache_fallback is True
    assert list(config.sources) == ["example"]
    assert deployer.call_args.kwargs["verbose"] is True
    deployer.return_value.deploy.assert_awaited_once_with(branch="production", environment=None)


def test_config_error(runner, tmp_path):
    result = runner.invoke(main, ["-c", str(tmp_path / "missing.yaml")])

    assert result.exit_code == 1
    assert "Error: There was an error reading the config file" in result.output
