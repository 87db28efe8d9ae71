"""
Orchestrator for resolving unique work items and synchronizing
environments with bounded concurrency.
"""

import asyncio
import time
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Mapping, Optional, Set, TypeVar

from ..infrastructure.logger import logger
from ..models import DeployConfig, ModuleManifest, ProgressInfo
from ..services.environments import Environment
from ..services.forge_cache import ForgeCacheManager
from ..services.git import GitMirrorService
from ..services.materializer import purge_path
from .aggregator import WorkSet
from .context import SyncContext
from .purger import StalePurger


T = TypeVar("T")


async def gather_fail_fast(coroutines: Iterable[Awaitable[T]]) -> List[T]:
    """
    Run ``coroutines`` concurrently; the first error cancels the rest.

    Returns:
        Results in submission order
    """
    tasks = [asyncio.ensure_future(coroutine) for coroutine in coroutines]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


####
##      RESOLUTION ORCHESTRATOR
#####
class ResolutionOrchestrator:
    """
    Fetches every unique Git remote and Forge release, then brings the
    module directories of each environment up to date.

    Args:
        config: Deployment settings (pool sizes, purge levels, callbacks)
        context: Run context shared with every service
        git: Git mirror service
        forge: Forge cache manager
        purger: Removes undeclared module directories afterwards
    """

    def __init__(
        self,
        config: DeployConfig,
        context: SyncContext,
        git: GitMirrorService,
        forge: ForgeCacheManager,
        purger: Optional[StalePurger] = None,
    ):
        self.config = config
        self.context = context
        self.git = git
        self.forge = forge
        self.purger = purger or StalePurger(config, context)
        self._git_semaphore = asyncio.Semaphore(config.max_workers)
        self._forge_semaphore = asyncio.Semaphore(config.max_workers)
        self._env_semaphore = asyncio.Semaphore(config.max_workers)
        self.progress: List[ProgressInfo] = []

    ####
    ##      RESOLUTION
    #####
    async def resolve(self, work: WorkSet) -> None:
        """
        Mirror all remotes and fill the Forge cache, both pools running concurrently.

        Raises:
            DeployError: The first fatal error of either pool
        """
        logger.debug(f"Resolving {len(work.git)} Git remotes and {len(work.forge)} Forge releases")
        self.progress = []
        await gather_fail_fast([
            self._run_pool("Resolving Git modules", list(work.git.values()),
                           self.git.resolve, self._git_semaphore, "git_resolve_seconds"),
            self._run_pool("Resolving Forge modules", list(work.forge.values()),
                           self.forge.ensure, self._forge_semaphore, "forge_resolve_seconds"),
        ])

    async def _run_pool(
        self,
        label: str,
        items: List[T],
        worker: Callable[[T], Awaitable[object]],
        semaphore: asyncio.Semaphore,
        timing: str,
    ) -> ProgressInfo:
        progress = ProgressInfo(label=label, total=len(items))
        self.progress.append(progress)
        if not items:
            return progress

        async def run(item: T) -> None:
            async with semaphore:
                await worker(item)
            progress.complete_item()
            self._report(progress)

        before = time.monotonic()
        try:
            await gather_fail_fast(run(item) for item in items)
        finally:
            duration = time.monotonic() - before
            setattr(self.context.statistics, timing, getattr(self.context.statistics, timing) + duration)
            logger.debug(f"{label} took {duration:.5f}s")
        return progress

    def _report(self, progress: ProgressInfo) -> None:
        callback = self.config.progress_callback
        if callback is not None:
            callback(progress.label, progress.completed, progress.total)

    ####
    ##      ENVIRONMENT SYNC
    #####
    async def sync_environments(self, environments: Mapping[str, Environment]) -> None:
        """Synchronize the module directories of every environment with a manifest."""

        async def run(env: Environment) -> None:
            async with self._env_semaphore:
                await self.sync_environment(env.manifest, env.directory, env.name, env.branch)

        await gather_fail_fast(
            run(environments[name]) for name in sorted(environments)
            if environments[name].manifest is not None
        )

    async def sync_environment(
        self,
        manifest: ModuleManifest,
        env_dir: Path,
        environment: Optional[str] = None,
        environment_branch: Optional[str] = None,
    ) -> Set[Path]:
        """
        Bring every module of ``manifest`` below ``env_dir`` up to date.

        Args:
            manifest: Parsed manifest of the environment
            env_dir: Environment root; module directories are relative to it
            environment: Environment name recorded for changes
            environment_branch: Branch that ``link`` Git modules follow

        Returns:
            The module directories used by the manifest
        """
        env_dir = Path(env_dir)
        logger.debug(f"Syncing {environment or env_dir}")
        module_dirs: Set[Path] = set()
        git_targets = {}
        forge_targets = {}

        for name, spec in manifest.git_modules.items():
            module_dir = env_dir / (spec.install_path or spec.module_dir or manifest.module_dir)
            module_dirs.add(module_dir)
            self.context.managed.add_subtree(module_dir / name)
            if spec.local:
                logger.debug(f"Not touching local module {module_dir / name}")
                continue
            git_targets[name] = module_dir / name

        for name, spec in manifest.forge_modules.items():
            module_dir = env_dir / (spec.module_dir or manifest.module_dir)
            module_dirs.add(module_dir)
            self.context.managed.add_subtree(module_dir / name)
            forge_targets[name] = module_dir / name

        if not self.config.dry_run:
            for module_dir in module_dirs:
                module_dir.mkdir(parents=True, exist_ok=True)
            if self.config.force:
                # forces a full resync, local modules stay untouched
                for target in list(git_targets.values()) + list(forge_targets.values()):
                    await asyncio.to_thread(purge_path, target)

        await gather_fail_fast(
            [self.git.sync_module(manifest.git_modules[name], target, environment_branch, environment)
             for name, target in git_targets.items()]
            + [self.forge.sync_to_module_dir(manifest.forge_modules[name], target, environment)
               for name, target in forge_targets.items()]
        )

        if self.config.purges("puppetfile"):
            module_dirs.add(env_dir / manifest.module_dir)
            for module_dir in sorted(module_dirs):
                if module_dir.resolve() == env_dir.resolve():
                    continue
                await asyncio.to_thread(self.purger.purge_module_dir, module_dir)
        return module_dirs


__all__ = ["ResolutionOrchestrator", "gather_fail_fast"]
