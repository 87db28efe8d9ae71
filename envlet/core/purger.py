"""
Removal of content that no configured source or manifest declares anymore.

Three levels can be enabled independently:

* ``deployment``: environment directories below a source's basedir that no
  branch produces,
* ``environment``: files inside an environment that are neither part of the
  control repository nor a managed module,
* ``puppetfile``: entries of a module directory that the manifest does not
  declare.

All methods block and are meant to run in a worker thread.
"""

import glob
import os
from pathlib import Path
from typing import Collection, Iterable, List, Mapping, Optional, Set

from ..infrastructure.logger import logger
from ..models import DeployConfig
from ..services.environments import Environment
from ..services.materializer import purge_path
from .context import SyncContext


RESOURCE_TYPES_DIR = ".resource_types"


def _glob_all(base: Path, patterns: Iterable[str]) -> Set[str]:
    matches: Set[str] = set()
    for pattern in patterns:
        globbed = glob.glob(os.path.join(str(base), pattern), recursive=True)
        logger.debug(f"Glob'ing with path {os.path.join(str(base), pattern)} found {len(globbed)} entries")
        matches.update(os.path.normpath(os.path.abspath(match)) for match in globbed)
    return matches


class StalePurger:
    """
    Deletes unmanaged paths; in dry-run mode it only reports them.

    Args:
        config: Deployment settings (purge levels, allow lists, sources)
        context: Run context holding the managed path set
    """

    def __init__(self, config: DeployConfig, context: SyncContext):
        self.config = config
        self.context = context

    def _remove(self, path: Path) -> None:
        self.context.statistics.purged_paths += 1
        if self.config.dry_run:
            logger.info(f"Would remove unmanaged path {path}")
            return
        logger.info(f"Removing unmanaged path {path}")
        purge_path(path)

    def _is_managed(self, path: Path) -> bool:
        return self.context.managed.contains(path) or self.context.managed.is_ancestor(path)

    ####
    ##      PUPPETFILE LEVEL
    #####
    def purge_module_dir(self, module_dir: Path) -> List[Path]:
        """Remove entries of ``module_dir`` that no declared module owns."""

        module_dir = Path(module_dir)
        if not module_dir.is_dir():
            return []

        removed = []
        for entry in sorted(module_dir.iterdir()):
            if self._is_managed(entry):
                continue
            self._remove(entry)
            removed.append(entry)
        return removed

    ####
    ##      ENVIRONMENT LEVEL
    #####
    def purge_environment(self, env: Environment) -> List[Path]:
        """
        Walk ``env.directory`` and remove everything that is not desired.

        Desired are the control repository tree, managed module directories
        and their ancestors, ``.resource_types`` and whatever the
        ``purge_allowlist`` globs match (with everything below it).
        """
        env_dir = Path(env.directory)
        if not env_dir.is_dir():
            return []

        desired = {os.path.normpath(os.path.abspath(str(path))) for path in env.desired_paths}
        allowed = _glob_all(env_dir, self.config.purge_allowlist)
        removed = []

        logger.debug(f"Walking directory {env_dir}")
        for root, dirnames, filenames in os.walk(env_dir):
            for name in sorted(dirnames):
                path = Path(root) / name
                keep, descend = self._classify(path, desired, allowed)
                if not keep:
                    self._remove(path)
                    removed.append(path)
                if not keep or not descend:
                    dirnames.remove(name)

            for name in sorted(filenames):
                path = Path(root) / name
                if not self._classify(path, desired, allowed)[0]:
                    self._remove(path)
                    removed.append(path)
        return removed

    def _classify(self, path: Path, desired: Set[str], allowed: Set[str]):
        """Return ``(keep, descend)`` for one path of an environment walk."""

        normalized = os.path.normpath(os.path.abspath(str(path)))
        if path.name == RESOURCE_TYPES_DIR and path.is_dir():
            return True, False
        if normalized in allowed:
            return True, False
        if self.context.managed.contains(path):
            return True, False
        if normalized in desired or self.context.managed.is_ancestor(path):
            return True, True
        # directories holding allowlisted content
        prefix = normalized + os.sep
        if any(match.startswith(prefix) for match in allowed):
            return True, True
        return False, False

    ####
    ##      DEPLOYMENT LEVEL
    #####
    def purge(
        self,
        environments: Mapping[str, Environment],
        branch: Optional[str] = None,
        environment: Optional[str] = None,
        skipped_sources: Collection[str] = (),
    ) -> List[Path]:
        """
        Apply the ``deployment`` and ``environment`` levels to every source.

        Args:
            environments: Every environment the current run produced
            branch: Only the environment of this branch is inspected
            environment: Only this environment is inspected
            skipped_sources: Sources that were not resolved in this run; their
                basedirs are left alone
        """
        deployment = self.config.purges("deployment")
        environment_level = self.config.purges("environment")
        if not deployment and not environment_level:
            return []

        removed: List[Path] = []
        for name in sorted(self.config.sources):
            source = self.config.sources[name]
            prefix = source.environment_prefix
            basedir = Path(source.basedir)

            if name in skipped_sources:
                logger.warning(f"Not purging content of source '{name}', it could not be resolved")
                continue

            if environment is not None and not environment.startswith(prefix):
                logger.debug(
                    f"Skipping purging unmanaged content for source '{name}', "
                    f"because the environment filter is set to {environment}"
                )
                continue

            if branch is not None:
                env = environments.get(prefix + branch)
                if environment_level and env is not None:
                    removed.extend(self.purge_environment(env))
                continue

            allowlisted = _glob_all(basedir, self.config.deployment_purge_allowlist)
            for candidate in sorted(glob.glob(os.path.join(str(basedir), glob.escape(prefix) + "*"))):
                env_path = Path(candidate)
                env_name = env_path.name
                if environment is not None and env_name != environment:
                    continue

                env = environments.get(env_name)
                if env is not None:
                    if environment_level:
                        removed.extend(self.purge_environment(env))
                    continue

                if not deployment:
                    continue
                if os.path.normpath(os.path.abspath(candidate)) in allowlisted:
                    logger.debug(f"Not purging environment {env_name} due to deployment_purge_allowlist match")
                    continue
                logger.info(f"Removing unmanaged environment {env_name}")
                self._remove(env_path)
                removed.append(env_path)
        return removed


__all__ = ["StalePurger", "RESOURCE_TYPES_DIR"]
