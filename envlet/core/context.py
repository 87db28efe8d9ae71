"""
Aggregation context owned by one deployment run.

Every worker receives the same ``SyncContext`` instead of touching module
level state. Counters are only mutated from coroutines running on the event
loop; the latest version table additionally sits behind an ``asyncio.Lock``
because its readers and writers interleave across await points.
"""

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Union

from ..infrastructure.logger import logger
from ..models import SyncStatistics


PathLike = Union[str, Path]


def _normalize(path: PathLike) -> str:
    return os.path.normpath(os.path.abspath(str(path)))


class LatestVersionTable:
    """Maps ``author-name`` to the version the registry reports as newest."""

    def __init__(self):
        self._versions: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def set(self, slug: str, version: str) -> None:
        async with self._lock:
            self._versions[slug] = version

    async def get(self, slug: str) -> Optional[str]:
        async with self._lock:
            return self._versions.get(slug)

    def reset(self) -> None:
        self._versions.clear()

    def __len__(self) -> int:
        return len(self._versions)


class ManagedPathSet:
    """
    Directories the current run expects to exist.

    A path is managed when it was added exactly, or when it lives below a
    managed subtree. Ancestors of managed paths are reported separately so a
    purger never removes a directory that still holds managed content.
    """

    def __init__(self):
        self._exact: Set[str] = set()
        self._subtrees: Set[str] = set()

    def add(self, path: PathLike) -> None:
        self._exact.add(_normalize(path))

    def add_subtree(self, path: PathLike) -> None:
        self._subtrees.add(_normalize(path))

    def contains(self, path: PathLike) -> bool:
        normalized = _normalize(path)
        if normalized in self._exact or normalized in self._subtrees:
            return True
        return any(normalized.startswith(subtree + os.sep) for subtree in self._subtrees)

    def is_ancestor(self, path: PathLike) -> bool:
        prefix = _normalize(path) + os.sep
        return any(entry.startswith(prefix) for entry in self._exact | self._subtrees)

    def __contains__(self, path: PathLike) -> bool:
        return self.contains(path)

    def __len__(self) -> int:
        return len(self._exact) + len(self._subtrees)


@dataclass
class SyncContext:
    """State shared by every worker of one deployment run."""

    statistics: SyncStatistics = field(default_factory=SyncStatistics)
    latest: LatestVersionTable = field(default_factory=LatestVersionTable)
    forge_keys: Set[str] = field(default_factory=set)
    managed: ManagedPathSet = field(default_factory=ManagedPathSet)
    changed_dirs: Set[str] = field(default_factory=set)
    changed_envs: Set[str] = field(default_factory=set)
    deprecation_notices: List[str] = field(default_factory=list)
    batch_deprecations: bool = True

    def reset(self) -> None:
        self.latest.reset()
        self.forge_keys.clear()

    def record_change(self, path: PathLike, environment: Optional[str] = None) -> None:
        self.changed_dirs.add(str(path))
        if environment:
            self.changed_envs.add(environment)

    def add_deprecation(self, notice: str) -> None:
        if self.batch_deprecations:
            if notice not in self.deprecation_notices:
                self.deprecation_notices.append(notice)
        else:
            logger.warning(notice)

    def flush_deprecations(self) -> List[str]:
        notices, self.deprecation_notices = self.deprecation_notices, []
        for notice in notices:
            logger.warning(notice)
        return notices


__all__ = ["LatestVersionTable", "ManagedPathSet", "SyncContext"]
