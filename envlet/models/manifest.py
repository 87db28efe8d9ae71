"""
Manifest domain models for envlet.

This module contains the typed result of parsing a Puppetfile: the manifest
itself, its Forge and Git module declarations, and the version request
variants a Forge declaration can carry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Union


LATEST = "latest"
PRESENT = "present"


####
##      VERSION REQUEST VARIANTS
#####
@dataclass(frozen=True)
class Latest:
    """Track whatever the registry reports as the newest release."""


@dataclass(frozen=True)
class Present:
    """Any version is fine as long as one is materialized."""


@dataclass(frozen=True)
class Pinned:
    """One concrete release."""

    version: str


VersionRequest = Union[Latest, Present, Pinned]


def version_request(version: str) -> VersionRequest:
    if version == LATEST:
        return Latest()
    if version == PRESENT:
        return Present()
    return Pinned(version)


####
##      MODULE SPECS
#####
@dataclass
class ForgeModuleSpec:
    """A module fetched from the Forge registry."""

    author: str
    name: str
    version: str = PRESENT
    sha256sum: Optional[str] = None
    base_url: Optional[str] = None
    cache_ttl: timedelta = field(default_factory=timedelta)
    module_dir: Optional[str] = None
    source: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.author or not self.name:
            raise ValueError("Forge module author and name are required")

    @property
    def slug(self) -> str:
        return f"{self.author}-{self.name}"

    @property
    def key(self) -> str:
        """Deduplication key shared by every environment requesting this release."""
        return f"{self.slug}-{self.version}"

    @property
    def request(self) -> VersionRequest:
        return version_request(self.version)


@dataclass
class GitModuleSpec:
    """A module fetched from a Git remote."""

    git: Optional[str] = None
    branch: Optional[str] = None
    tag: Optional[str] = None
    commit: Optional[str] = None
    ref: Optional[str] = None
    link: bool = False
    ignore_unreachable: bool = False
    fallback: List[str] = field(default_factory=list)
    install_path: Optional[str] = None
    module_dir: Optional[str] = None
    private_key: Optional[str] = None
    use_ssh_agent: bool = False
    local: bool = False

    @property
    def mirror_name(self) -> str:
        """Directory name of the bare mirror for this remote."""
        return mirror_name(self.git or "")

    def tree(self, environment_branch: Optional[str] = None) -> Optional[str]:
        """The tree to check out; ``None`` means the remote's default branch."""

        for candidate in (self.branch, self.commit, self.tag, self.ref):
            if candidate:
                return candidate
        if self.link:
            return environment_branch
        return None


def mirror_name(url: str) -> str:
    return url.replace("/", "_").replace(":", "-")


####
##      MANIFEST
#####
@dataclass
class ModuleManifest:
    """Parsed representation of one Puppetfile."""

    path: str
    source: str = ""
    branch: str = ""
    module_dir: str = "modules"
    forge_base_url: Optional[str] = None
    forge_cache_ttl: timedelta = field(default_factory=timedelta)
    forge_modules: Dict[str, ForgeModuleSpec] = field(default_factory=dict)
    git_modules: Dict[str, GitModuleSpec] = field(default_factory=dict)
    private_key: Optional[str] = None

    @property
    def module_names(self) -> List[str]:
        return sorted(set(self.forge_modules) | set(self.git_modules))


__all__ = [
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
]
