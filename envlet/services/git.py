"""
Bare mirrors of Git remotes and extraction of trees from them.

One mirror below the modules cache directory serves every environment that
references the remote; each environment then extracts its own tree with
``git archive``. A ``.latest_commit`` marker in the target directory makes
repeated syncs of an unchanged tree a no-op.
"""

import asyncio
import time
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from ..core.context import SyncContext
from ..infrastructure.command import execute_command, stream_command, with_ssh_key
from ..infrastructure.error_handler import RemoteUnreachableError
from ..infrastructure.logger import logger
from ..infrastructure.stream import StreamTee, run_in_thread
from ..models import DeployConfig, GitModuleSpec, mirror_name
from .materializer import Materializer, create_or_purge_dir, purge_path


HASH_FILE = ".latest_commit"
DEFAULT_TREE = "HEAD"


def needs_ssh_key(url: str, private_key: Optional[str], use_ssh_agent: bool = False) -> bool:
    """A key is only loaded for non-HTTP remotes whose key is not already in an agent."""

    if not private_key or use_ssh_agent:
        return False
    return urlparse(url).scheme not in ("http", "https")


class GitMirrorService:
    """
    Runs the external ``git`` binary against the mirrors of one deployment.

    Args:
        config: Deployment settings (timeouts, retry and dry-run switches)
        context: Run context receiving counters and changed directories
        materializer: Extracts ``git archive`` streams
    """

    def __init__(self, config: DeployConfig, context: SyncContext, materializer: Materializer):
        self.config = config
        self.context = context
        self.materializer = materializer
        self.modules_cache_dir = Path(config.modules_cache_dir)
        self._extract_semaphore = asyncio.Semaphore(config.max_extract_workers)

    def mirror_dir(self, url: str) -> Path:
        return self.modules_cache_dir / mirror_name(url)

    ####
    ##      MIRRORS
    #####
    async def mirror_or_update(
        self,
        url: str,
        mirror_dir: Path,
        private_key: Optional[str] = None,
        allow_fail: bool = False,
        use_ssh_agent: bool = False,
    ) -> bool:
        """
        Clone ``url`` as a bare mirror, or prune-update an existing mirror.

        Returns:
            False when the remote was unreachable and ``allow_fail`` is set

        Raises:
            RemoteUnreachableError: The remote was unreachable otherwise
        """
        mirror_dir = Path(mirror_dir)
        existed = mirror_dir.exists()

        result = await self._mirror_command(url, mirror_dir, existed, private_key, use_ssh_agent)
        if not result.ok and existed and self.config.retry_git_commands:
            logger.warning(f"git command failed for {url}, deleting {mirror_dir} and trying again")
            await asyncio.to_thread(purge_path, mirror_dir)
            result = await self._mirror_command(url, mirror_dir, False, private_key, use_ssh_agent)

        if result.ok:
            return True
        if allow_fail:
            logger.warning(f"git repository {url} does not exist or is unreachable at this moment!")
            return False
        raise RemoteUnreachableError(
            f"git repository {url} does not exist or is unreachable at this moment! "
            f"Output: {result.output.strip()}"
        )

    async def _mirror_command(self, url: str, mirror_dir: Path, existed: bool,
                              private_key: Optional[str], use_ssh_agent: bool):
        if existed:
            args = ["git", "--git-dir", str(mirror_dir), "remote", "update", "--prune"]
        else:
            args = ["git", "clone", "--mirror", url, str(mirror_dir)]

        if needs_ssh_key(url, private_key, use_ssh_agent):
            args = with_ssh_key(args, private_key)
        return await execute_command(args, self.config.timeout, allow_fail=True)

    async def resolve(self, spec: GitModuleSpec) -> bool:
        """Mirror the remote of one unique Git work item."""

        if spec.private_key:
            logger.debug(f"git repo url {spec.git} with ssh key {spec.private_key}")
        else:
            logger.debug(f"git repo url {spec.git} without ssh key")
        return await self.mirror_or_update(
            spec.git,
            self.mirror_dir(spec.git),
            private_key=spec.private_key,
            allow_fail=spec.ignore_unreachable or self.config.ignore_unreachable_modules,
            use_ssh_agent=spec.use_ssh_agent,
        )

    async def branches(self, mirror_dir: Path) -> List[str]:
        result = await execute_command(["git", "--git-dir", str(mirror_dir), "branch"], self.config.timeout)
        return [line.lstrip("* ").strip() for line in result.output.splitlines() if line.strip()]

    async def list_tree(self, mirror_dir: Path, tree: str) -> List[str]:
        """Every path (files and directories) of ``tree``, relative to its root."""

        result = await execute_command(
            ["git", "--git-dir", str(mirror_dir), "ls-tree", "-r", "-t", "--name-only", tree],
            self.config.timeout,
        )
        return [line for line in result.output.splitlines() if line]

    async def commit_of(self, mirror_dir: Path, tree: str) -> Optional[str]:
        result = await execute_command(
            ["git", "--git-dir", str(mirror_dir), "log", "-n1", "--pretty=format:%H", tree],
            self.config.timeout,
            allow_fail=True,
        )
        commit = result.output.strip()
        if not result.ok or not commit:
            return None
        return commit

    ####
    ##      TREE EXTRACTION
    #####
    async def sync_to_module_dir(
        self,
        mirror_dir: Path,
        target_dir: Path,
        tree: str,
        allow_fail: bool = False,
        environment: Optional[str] = None,
        control_repo: bool = False,
    ) -> Optional[bool]:
        """
        Extract ``tree`` of ``mirror_dir`` into ``target_dir`` unless it is unchanged.

        Args:
            mirror_dir: Bare mirror to read from
            target_dir: Directory receiving the tree
            tree: Branch, tag, commit or ref
            allow_fail: Report an unresolvable tree instead of raising
            environment: Environment name recorded for changed directories
            control_repo: ``target_dir`` is an environment; it is not emptied
                first and counts as an environment sync

        Returns:
            True if the directory was (or in dry-run mode would be) synced,
            False if it was up to date, None if the tree was unreachable and
            ``allow_fail`` is set

        Raises:
            RemoteUnreachableError: The tree could not be resolved
        """
        target_dir = Path(target_dir)
        self.context.statistics.sync_git_count += 1

        commit = await self.commit_of(mirror_dir, tree)
        if commit is None:
            if allow_fail:
                logger.info(f"Failed to populate module {target_dir} but ignore-unreachable is set. Continuing...")
                return None
            raise RemoteUnreachableError(f"Could not resolve tree {tree} of {mirror_dir} for {target_dir}")

        hash_file = target_dir / HASH_FILE
        try:
            if hash_file.read_text(encoding="utf-8").strip() == commit:
                logger.debug(f"Skipping {target_dir}, it is already at {commit}")
                return False
        except OSError:
            pass

        logger.info(f"Need to sync {target_dir}")
        if control_repo:
            self.context.statistics.need_sync_env_count += 1
        else:
            self.context.statistics.need_sync_git_count += 1
        if self.config.dry_run:
            return True

        before = time.monotonic()
        async with self._extract_semaphore:
            if control_repo:
                target_dir.mkdir(parents=True, exist_ok=True)
            else:
                await asyncio.to_thread(create_or_purge_dir, target_dir)
            await self._archive(mirror_dir, tree, target_dir)
        duration = time.monotonic() - before
        self.context.statistics.git_extract_seconds += duration
        logger.debug(f"Extracting {tree} of {mirror_dir} into {target_dir} took {duration:.5f}s")

        logger.debug(f"Writing hash {commit} to {hash_file}")
        hash_file.write_text(commit, encoding="utf-8")
        self.context.record_change(target_dir, environment)
        return True

    async def _archive(self, mirror_dir: Path, tree: str, target_dir: Path) -> None:
        tee = StreamTee()
        reader = tee.add_reader("extract")
        args = ["git", "--git-dir", str(mirror_dir), "archive", tree]

        async def produce() -> None:
            try:
                async for chunk in stream_command(args, self.config.timeout):
                    await asyncio.to_thread(tee.feed, chunk)
            except BaseException as e:
                tee.fail(e)
                raise
            tee.close()

        await asyncio.gather(produce(), run_in_thread(self.materializer.extract, reader, target_dir, 0))

    async def sync_module(
        self,
        spec: GitModuleSpec,
        target_dir: Path,
        environment_branch: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> Optional[bool]:
        """
        Sync one declared Git module, walking its fallback list if needed.

        Every attempt but the last tolerates an unreachable tree; the last
        one does so only when the module or the configuration allows it.
        """
        tree = spec.tree(environment_branch) or DEFAULT_TREE
        mirror_dir = self.mirror_dir(spec.git)
        ignore_unreachable = spec.ignore_unreachable or self.config.ignore_unreachable_modules

        if not spec.fallback:
            return await self.sync_to_module_dir(mirror_dir, target_dir, tree, ignore_unreachable, environment)

        result = await self.sync_to_module_dir(mirror_dir, target_dir, tree, True, environment)
        if result is not None:
            return result

        for index, fallback in enumerate(spec.fallback):
            last = index == len(spec.fallback) - 1
            logger.info(f"Trying fallback branch {fallback} for {target_dir}, because {tree} is unreachable")
            result = await self.sync_to_module_dir(
                mirror_dir, target_dir, fallback, ignore_unreachable if last else True, environment
            )
            if result is not None:
                return result
        return None


__all__ = ["GitMirrorService", "needs_ssh_key", "HASH_FILE", "DEFAULT_TREE"]
