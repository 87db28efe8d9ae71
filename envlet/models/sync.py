"""
Deployment run models for envlet.

This module contains data classes and enums representing the progress and
the outcome of a deployment run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class DeployStatus(Enum):
    """Status enumeration for deployment runs."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ProgressInfo:
    """Progress of one resolution pool."""

    label: str
    total: int
    completed: int = 0
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return (self.completed / self.total) * 100.0

    @property
    def elapsed_time(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()

    def complete_item(self) -> None:
        self.completed += 1


@dataclass
class SyncStatistics:
    """Counters and timings of a deployment run."""

    sync_git_count: int = 0
    sync_forge_count: int = 0
    need_sync_git_count: int = 0
    need_sync_forge_count: int = 0
    need_sync_env_count: int = 0
    purged_paths: int = 0
    git_resolve_seconds: float = 0.0
    forge_resolve_seconds: float = 0.0
    forge_query_seconds: float = 0.0
    git_extract_seconds: float = 0.0
    forge_extract_seconds: float = 0.0

    @property
    def needs_sync(self) -> bool:
        return bool(self.need_sync_git_count or self.need_sync_forge_count or self.need_sync_env_count)


@dataclass
class DeployResult:
    """Outcome of a deployment run."""

    status: DeployStatus
    statistics: SyncStatistics = field(default_factory=SyncStatistics)
    environments: List[str] = field(default_factory=list)
    changed_dirs: List[str] = field(default_factory=list)
    changed_environments: List[str] = field(default_factory=list)
    deprecation_notices: List[str] = field(default_factory=list)
    dry_run: bool = False

    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_successful(self) -> bool:
        return self.status == DeployStatus.COMPLETED

    @property
    def needs_sync(self) -> bool:
        return self.statistics.needs_sync

    @property
    def duration_seconds(self) -> float:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def mark_completed(self) -> None:
        self.completed_at = datetime.now()
        self.status = DeployStatus.COMPLETED

    def mark_failed(self, error: Exception) -> None:
        self.completed_at = datetime.now()
        self.status = DeployStatus.FAILED
        self.error_message = str(error)


__all__ = [
    "DeployStatus",
    "ProgressInfo",
    "SyncStatistics",
    "DeployResult",
]
