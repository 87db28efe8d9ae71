"""
Programmatic entry point for deploying environments and single manifests.
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional

import httpx

from ..core.aggregator import aggregate
from ..core.context import SyncContext
from ..core.filter import SkiplistFilter
from ..core.orchestrator import ResolutionOrchestrator
from ..core.parser import ManifestParser
from ..core.purger import StalePurger
from ..infrastructure.command import execute_command
from ..infrastructure.error_handler import DeployError
from ..infrastructure.logger import logger
from ..models import DeployConfig, DeployResult, DeployStatus, ModuleManifest
from ..services.environments import EnvironmentDriver
from ..services.forge_api import ForgeAPIClient
from ..services.forge_cache import ForgeCacheManager
from ..services.git import GitMirrorService
from ..services.materializer import Materializer


BRANCH_ENV_VAR = "ENVLET_BRANCH"


@dataclass
class _Services:
    context: SyncContext
    git: GitMirrorService
    forge: ForgeCacheManager
    purger: StalePurger
    orchestrator: ResolutionOrchestrator


class EnvironmentDeployer:
    """
    Deploys the environments of the configured sources, or a single
    Puppetfile into a directory.

    Example:
        >>> config = DeployConfig.from_yaml("envlet.yaml")
        >>> deployer = EnvironmentDeployer(config, verbose=True)
        >>> result = asyncio.run(deployer.deploy(branch="production"))
    """

    def __init__(
        self,
        config: DeployConfig,
        verbose: bool = False,
        forge_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the deployer.

        Args:
            config: Deployment settings
            verbose: Enable debug logging
            forge_transport: Custom ``httpx`` transport for registry requests
        """
        self.config = config
        self.verbose = verbose
        self.forge_transport = forge_transport
        self.last_result: Optional[DeployResult] = None
        self.set_verbose(verbose)

    def set_verbose(self, verbose: bool) -> None:
        """Switch debug logging on or off."""

        self.verbose = verbose
        logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    @asynccontextmanager
    async def _services(self) -> AsyncIterator[_Services]:
        self.config.ensure_cache_dirs()
        context = SyncContext(batch_deprecations=not logger.isEnabledFor(logging.INFO))
        materializer = Materializer(SkiplistFilter(self.config.purge_skiplist), self.config.use_hardlinks)

        async with ForgeAPIClient(self.config.forge_base_url, transport=self.forge_transport) as api:
            git = GitMirrorService(self.config, context, materializer)
            forge = ForgeCacheManager(self.config, api, context, materializer)
            purger = StalePurger(self.config, context)
            orchestrator = ResolutionOrchestrator(self.config, context, git, forge, purger)
            yield _Services(context, git, forge, purger, orchestrator)

    ####
    ##      DEPLOYMENTS
    #####
    async def deploy(self, branch: Optional[str] = None,
                     environment: Optional[str] = None) -> DeployResult:
        """
        Deploy every environment of every configured source.

        Args:
            branch: Only deploy this branch
            environment: Only deploy the environment with this name

        Returns:
            DeployResult with statistics and changed directories

        Raises:
            DeployError: On the first fatal error
        """
        logger.debug(f"Starting deployment (branch={branch}, environment={environment})")
        result = DeployResult(status=DeployStatus.IN_PROGRESS, dry_run=self.config.dry_run)
        self.last_result = result
        before = time.monotonic()

        context = None
        try:
            async with self._services() as services:
                context = services.context
                driver = EnvironmentDriver(self.config, context, services.git)

                environments = await driver.prepare(branch=branch, environment=environment)
                manifests = {name: env.manifest for name, env in environments.items() if env.manifest}
                work = aggregate(manifests, context, self.config.forge_base_url, self.config.forge_cache_ttl)

                await services.orchestrator.resolve(work)
                await services.orchestrator.sync_environments(environments)
                await asyncio.to_thread(services.purger.purge, environments, branch, environment,
                                        driver.unreachable_sources)

            result.environments = sorted(environments)
            self._collect(result, context)
            self._log_summary(result, len(work.git), len(work.forge), time.monotonic() - before)
            await self._postrun(result, branch)
            result.mark_completed()
            return result

        except DeployError as e:
            if context is not None:
                self._collect(result, context)
            result.mark_failed(e)
            raise

    async def deploy_manifest(self, path: Path, target_dir: Optional[Path] = None) -> DeployResult:
        """
        Deploy the modules of one Puppetfile below ``target_dir``.

        Args:
            path: Puppetfile to deploy
            target_dir: Directory holding the module directory, defaults to
                the directory of ``path``

        Link-mode Git modules follow the branch named by ``ENVLET_BRANCH``.
        """
        path = Path(path)
        target_dir = Path(target_dir) if target_dir is not None else path.parent
        result = DeployResult(status=DeployStatus.IN_PROGRESS, dry_run=self.config.dry_run)
        self.last_result = result
        before = time.monotonic()

        context = None
        try:
            manifest = self._parser().parse_file(path, private_key=self.config.git_private_key)
            async with self._services() as services:
                context = services.context
                work = aggregate({target_dir.name: manifest}, context,
                                 self.config.forge_base_url, self.config.forge_cache_ttl)
                await services.orchestrator.resolve(work)
                await services.orchestrator.sync_environment(
                    manifest, target_dir, environment_branch=os.environ.get(BRANCH_ENV_VAR)
                )

            self._collect(result, context)
            self._log_summary(result, len(work.git), len(work.forge), time.monotonic() - before)
            await self._postrun(result, None)
            result.mark_completed()
            return result

        except DeployError as e:
            if context is not None:
                self._collect(result, context)
            result.mark_failed(e)
            raise

    def validate_manifest(self, path: Path) -> ModuleManifest:
        """
        Parse ``path`` in strict mode without touching the network or disk.

        Raises:
            ManifestError: The manifest is invalid
        """
        manifest = self._parser(strict=True).parse_file(Path(path))
        logger.info(f"Successfully validated Puppetfile {path}")
        return manifest

    def _parser(self, strict: Optional[bool] = None) -> ManifestParser:
        return ManifestParser(
            module_dir_override=self.config.module_dir_override,
            strict=self.config.strict_validation if strict is None else strict,
        )

    ####
    ##      REPORTING
    #####
    @staticmethod
    def _collect(result: DeployResult, context: SyncContext) -> None:
        result.statistics = context.statistics
        result.changed_dirs = sorted(context.changed_dirs)
        result.changed_environments = sorted(context.changed_envs)
        result.deprecation_notices = context.flush_deprecations()

    def _log_summary(self, result: DeployResult, git_count: int, forge_count: int, duration: float) -> None:
        stats = result.statistics
        if self.config.dry_run:
            logger.info(
                f"dry-run: would have synced {stats.need_sync_git_count} Git modules, "
                f"{stats.need_sync_forge_count} Forge modules and {stats.need_sync_env_count} environments"
            )
            return
        logger.info(
            f"Synced {len(result.environments) or 1} environment(s) with {git_count} git repositories "
            f"and {forge_count} Forge modules in {duration:.1f}s"
        )

    async def _postrun(self, result: DeployResult, branch: Optional[str]) -> None:
        if not self.config.postrun or self.config.dry_run:
            return

        args = postrun_arguments(self.config.postrun, result.changed_dirs,
                                 result.changed_environments, branch)
        logger.info(f"Executing postrun command {' '.join(args)}")
        output = await execute_command(args, self.config.timeout)
        if output.output.strip():
            logger.info(f"postrun command output: {output.output.strip()}")


def postrun_arguments(command: List[str], changed_dirs: List[str],
                      changed_environments: List[str], branch: Optional[str]) -> List[str]:
    """
    Expand the placeholders of the postrun command.

    ``$modifieddirs`` and ``$modifiedenvs`` expand to one argument per entry
    when used on their own, and to a space separated list inside a longer
    argument. ``$branchparam`` is the requested branch or an empty string.
    """
    substitutions = {
        "$modifieddirs": list(changed_dirs),
        "$modifiedenvs": list(changed_environments),
    }
    args: List[str] = []
    for arg in command:
        if arg in substitutions:
            args.extend(substitutions[arg])
            continue
        for placeholder, values in substitutions.items():
            arg = arg.replace(placeholder, " ".join(values))
        args.append(arg.replace("$branchparam", branch or ""))
    return args


__all__ = ["EnvironmentDeployer", "postrun_arguments", "BRANCH_ENV_VAR"]
