"""
Forge registry domain models for envlet.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ForgeRelease:
    """What the registry reported about a module release."""

    version: str = ""
    file_md5: str = ""
    file_size: int = 0
    deprecated_at: Optional[str] = None
    superseded_by: Optional[str] = None
    needs_get: bool = False

    @property
    def is_deprecated(self) -> bool:
        return bool(self.deprecated_at)

    @classmethod
    def from_module_json(cls, data: Dict[str, Any], needs_get: bool = True) -> "ForgeRelease":
        """Build from a ``/v3/modules/{slug}`` response body."""

        current = data.get("current_release") or {}
        successor = data.get("superseded_by") or {}
        return cls(
            version=current.get("version") or "",
            file_md5=current.get("file_md5") or "",
            file_size=int(current.get("file_size") or 0),
            deprecated_at=data.get("deprecated_at") or None,
            superseded_by=successor.get("slug") if isinstance(successor, dict) else None,
            needs_get=needs_get,
        )

    @classmethod
    def from_release_json(cls, data: Dict[str, Any]) -> "ForgeRelease":
        """Build from a ``/v3/releases/{slug}-{version}`` response body."""

        return cls(
            version=data.get("version") or "",
            file_md5=data.get("file_md5") or "",
            file_size=int(data.get("file_size") or 0),
        )


@dataclass(frozen=True)
class ModuleMetadata:
    """The ``metadata.json`` descriptor shipped inside a module."""

    name: str
    version: str
    author: str

    @classmethod
    def read(cls, path: Path) -> Optional["ModuleMetadata"]:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

        full_name = str(data.get("name") or "")
        # "puppetlabs-apt" or "puppetlabs/apt"
        name = full_name.replace("/", "-").split("-", 1)[-1] if full_name else "N/A"
        return cls(
            name=name,
            version=str(data.get("version") or ""),
            author=str(data.get("author") or "").lower(),
        )


__all__ = ["ForgeRelease", "ModuleMetadata"]
