"""
Turns the branches of the configured control repositories into environments.
"""

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

from ..core.context import SyncContext
from ..core.parser import ManifestParser
from ..infrastructure.error_handler import ConfigError, DeployError
from ..infrastructure.logger import logger
from ..models import DeployConfig, ModuleManifest, SourceConfig
from .git import HASH_FILE, GitMirrorService
from .materializer import purge_path


MANIFEST_NAME = "Puppetfile"
_INVALID_CHARACTERS = re.compile(r"\W")


@dataclass
class Environment:
    """One deployed branch of a control repository."""

    name: str
    source: str
    branch: str
    directory: Path
    manifest: Optional[ModuleManifest] = None
    tree_paths: List[str] = field(default_factory=list)

    @property
    def desired_paths(self) -> List[Path]:
        """Content the control repository itself puts into the environment."""
        return [self.directory / path for path in self.tree_paths] + [self.directory / HASH_FILE]


def is_temporary_branch(branch: str) -> bool:
    return branch.startswith("tmp/") and branch.endswith("/head")


class EnvironmentDriver:
    """
    Mirrors control repositories and deploys their branches.

    Args:
        config: Deployment settings with the configured sources
        context: Run context; environment directories become managed paths
        git: Git service used for mirrors and tree extraction
    """

    def __init__(self, config: DeployConfig, context: SyncContext, git: GitMirrorService):
        self.config = config
        self.context = context
        self.git = git
        self._semaphore = asyncio.Semaphore(config.max_workers)
        # sources whose control repository could not be reached in the last prepare
        self.unreachable_sources: Set[str] = set()

    def mirror_dir(self, source: SourceConfig) -> Path:
        return Path(self.config.env_cache_dir) / f"{source.name}.git"

    def environment_name(self, source: SourceConfig, branch: str) -> Optional[str]:
        """
        Environment name of ``branch``, or None when the branch must be skipped.

        Characters other than letters, digits and underscores are replaced
        by ``_`` unless the source's ``invalid_branches`` mode is ``error``.
        """
        corrected = _INVALID_CHARACTERS.sub("_", branch)
        if corrected != branch:
            if source.invalid_branches == "error":
                logger.error(f"Skipping branch {branch} of source {source.name}, it contains invalid characters")
                return None
            if source.invalid_branches == "correct_and_warn":
                logger.warning(f"Renaming branch {branch} of source {source.name} to {corrected}")
        return source.environment_prefix + corrected

    def select_sources(self, environment: Optional[str] = None) -> List[SourceConfig]:
        """Sources that may produce ``environment``; every source without a filter."""

        sources = [self.config.sources[name] for name in sorted(self.config.sources)]
        if environment is None:
            return sources
        return [source for source in sources if environment.startswith(source.environment_prefix)]

    async def prepare(self, branch: Optional[str] = None,
                      environment: Optional[str] = None) -> Dict[str, Environment]:
        """
        Deploy the control repository content of every selected branch.

        Args:
            branch: Only deploy this branch of every source
            environment: Only deploy the environment with this name

        Returns:
            Environment name to Environment
        """
        sources = self.select_sources(environment)
        self.unreachable_sources = set()
        if environment is not None and not sources:
            logger.warning(f"No source with a prefix matching environment {environment} found")

        results = await asyncio.gather(
            *(self._prepare_source(source, branch, environment) for source in sources)
        )

        environments: Dict[str, Environment] = {}
        for prepared in results:
            for name, env in prepared.items():
                if name in environments:
                    raise ConfigError(
                        f"Environment {name} is produced by sources {environments[name].source} "
                        f"and {env.source}"
                    )
                environments[name] = env
        return environments

    async def _prepare_source(self, source: SourceConfig, branch: Optional[str],
                              environment: Optional[str]) -> Dict[str, Environment]:
        private_key = source.private_key or self.config.git_private_key
        if private_key and not Path(private_key).is_file():
            raise ConfigError(f"Could not find SSH private key {private_key} of source {source.name}")

        logger.debug(
            f"Puppet environment: {source.name} (remote={source.remote}, basedir={source.basedir}, "
            f"private_key={private_key}, prefix={source.prefix})"
        )
        Path(source.basedir).mkdir(parents=True, exist_ok=True)

        mirror_dir = self.mirror_dir(source)
        reachable = await self.git.mirror_or_update(
            source.remote, mirror_dir, private_key=private_key, allow_fail=not source.exit_if_unreachable
        )
        if not reachable:
            logger.warning(f"Skipping source {source.name}, its environments are left untouched")
            self.unreachable_sources.add(source.name)
            return {}

        selected = {}
        for candidate in await self.git.branches(mirror_dir):
            if is_temporary_branch(candidate) or (branch is not None and candidate != branch):
                logger.debug(f"Skipping branch {candidate}")
                continue
            name = self.environment_name(source, candidate)
            if name is None or (environment is not None and name != environment):
                continue
            selected[name] = candidate

        wanted = environment if environment is not None else branch
        if wanted is not None and not selected:
            self._report_missing_branch(source, wanted)

        prepared = await asyncio.gather(
            *(self._prepare_branch(source, mirror_dir, candidate, name, private_key)
              for name, candidate in selected.items())
        )
        return {env.name: env for env in prepared}

    def _report_missing_branch(self, source: SourceConfig, wanted: str) -> None:
        message = f"Couldn't find specified branch/environment '{wanted}' anywhere in source '{source.name}' ({source.remote})"
        if source.error_missing_branch:
            raise DeployError(message)
        if source.warn_missing_branch:
            logger.warning(message)
        else:
            logger.debug(message)

    async def _prepare_branch(self, source: SourceConfig, mirror_dir: Path, branch: str,
                              name: str, private_key: Optional[str]) -> Environment:
        async with self._semaphore:
            directory = Path(source.basedir) / name
            logger.debug(f"Resolving branch: {branch} of source {source.name}")

            if self.config.force and not self.config.dry_run:
                await asyncio.to_thread(purge_path, directory)

            await self.git.sync_to_module_dir(mirror_dir, directory, branch, environment=name, control_repo=True)
            self.context.managed.add(directory)
            tree_paths = await self.git.list_tree(mirror_dir, branch)

        env = Environment(name=name, source=source.name, branch=branch,
                          directory=directory, tree_paths=tree_paths)

        manifest_path = directory / MANIFEST_NAME
        if manifest_path.is_file():
            parser = ManifestParser(
                force_forge_versions=source.force_forge_versions,
                module_dir_override=self.config.module_dir_override,
                strict=self.config.strict_validation,
            )
            env.manifest = parser.parse_file(manifest_path, source=source.name, branch=name,
                                             private_key=private_key)
        else:
            logger.debug(f"Skipping branch {name} because {manifest_path} does not exist")
        return env


__all__ = ["Environment", "EnvironmentDriver", "MANIFEST_NAME", "is_temporary_branch"]
