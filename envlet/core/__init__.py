"""
Manifest parsing, aggregation and the shared run context.

The orchestrator and the purger live in their own modules because they
depend on the services layer.
"""

from .parser import ManifestParser, LineKind, prepare
from .aggregator import WorkSet, aggregate
from .context import LatestVersionTable, ManagedPathSet, SyncContext
from .filter import SkiplistFilter

__all__ = [
    "ManifestParser",
    "LineKind",
    "prepare",
    "WorkSet",
    "aggregate",
    "LatestVersionTable",
    "ManagedPathSet",
    "SyncContext",
    "SkiplistFilter",
]
