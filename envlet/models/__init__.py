"""
Core data models API surface for envlet.

This file re-exports model classes from domain-specific modules so callers
can simply write `from envlet.models import X`.
"""

from .manifest import (
    LATEST,
    PRESENT,
    Latest,
    Present,
    Pinned,
    VersionRequest,
    version_request,
    ForgeModuleSpec,
    GitModuleSpec,
    ModuleManifest,
    mirror_name,
)
from .forge import ForgeRelease, ModuleMetadata
from .sync import (
    DeployStatus,
    ProgressInfo,
    SyncStatistics,
    DeployResult,
)
from .config import (
    DEFAULT_FORGE_BASE_URL,
    PURGE_LEVELS,
    parse_duration,
    SourceConfig,
    DeployConfig,
)

__all__ = [
    # Manifest models
    "LATEST",
    "PRESENT",
    "Latest",
    "Present",
    "Pinned",
    "VersionRequest",
    "version_request",
    "ForgeModuleSpec",
    "GitModuleSpec",
    "ModuleManifest",
    "mirror_name",
    # Forge models
    "ForgeRelease",
    "ModuleMetadata",
    # Sync models
    "DeployStatus",
    "ProgressInfo",
    "SyncStatistics",
    "DeployResult",
    # Config models
    "DEFAULT_FORGE_BASE_URL",
    "PURGE_LEVELS",
    "parse_duration",
    "SourceConfig",
    "DeployConfig",
]
