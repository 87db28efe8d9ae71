"""
Configuration models for envlet deployments.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from ..infrastructure.error_handler import ConfigError
from ..infrastructure.retry_manager import RetryConfig


DEFAULT_FORGE_BASE_URL = "https://forgeapi.puppet.com"
PURGE_LEVELS = ("deployment", "environment", "puppetfile")
INVALID_BRANCH_MODES = ("correct_and_warn", "correct", "error")

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def parse_duration(value: str) -> timedelta:
    """Parse a Go style duration such as ``300ms``, ``1.5h`` or ``2h45m``."""

    text = str(value).strip()
    if text in ("0", ""):
        return timedelta(0)

    pos = 0
    total = timedelta(0)
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ValueError(
                f"Can not convert value {value} to a duration. "
                "Valid time units are 300ms, 1.5h or 2h45m"
            )
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return total


@dataclass
class SourceConfig:
    """One control repository whose branches become environments."""

    name: str
    remote: str
    basedir: str
    prefix: str = ""
    private_key: Optional[str] = None
    force_forge_versions: bool = False
    warn_missing_branch: bool = False
    error_missing_branch: bool = False
    exit_if_unreachable: bool = False
    invalid_branches: str = "correct_and_warn"

    def __post_init__(self) -> None:
        if not self.remote:
            raise ConfigError(f"Source {self.name} is missing its remote setting")
        if not self.basedir:
            raise ConfigError(f"Source {self.name} is missing its basedir setting")
        if self.invalid_branches not in INVALID_BRANCH_MODES:
            raise ConfigError(
                f"Source {self.name}: invalid_branches must be one of {', '.join(INVALID_BRANCH_MODES)}"
            )

    @property
    def environment_prefix(self) -> str:
        prefix = str(self.prefix).strip()
        if prefix.lower() in ("", "false"):
            return ""
        if prefix.lower() == "true":
            return f"{self.name}_"
        return f"{prefix}_"


@dataclass
class DeployConfig:
    """
    Settings of a deployment run.

    Mirrors the YAML configuration file and the command line switches.
    """

    cache_dir: Path
    sources: Dict[str, SourceConfig] = field(default_factory=dict)

    # Registry settings
    forge_base_url: str = DEFAULT_FORGE_BASE_URL
    forge_cache_ttl: timedelta = field(default_factory=timedelta)
    use_cache_fallback: bool = False
    checksum_verification: bool = False

    # Git settings
    git_private_key: Optional[str] = None
    timeout: int = 300
    retry_git_commands: bool = False
    ignore_unreachable_modules: bool = False

    # Concurrency settings
    max_workers: int = 50
    max_extract_workers: int = 20

    # Purge settings
    purge_levels: List[str] = field(default_factory=lambda: ["deployment", "puppetfile"])
    purge_allowlist: List[str] = field(default_factory=list)
    deployment_purge_allowlist: List[str] = field(default_factory=list)
    purge_skiplist: List[str] = field(default_factory=list)

    # Behaviour
    use_hardlinks: bool = True
    dry_run: bool = False
    force: bool = False
    strict_validation: bool = False
    module_dir_override: Optional[str] = None
    postrun: List[str] = field(default_factory=list)
    retry: RetryConfig = field(default_factory=RetryConfig)
    progress_callback: Optional[Callable[[str, int, int], None]] = None

    def __post_init__(self) -> None:
        self.cache_dir = Path(self.cache_dir)
        if self.max_workers <= 0:
            raise ConfigError("max_workers must be positive")
        if self.max_extract_workers <= 0:
            raise ConfigError("max_extract_workers must be positive")
        if self.timeout <= 0:
            raise ConfigError("timeout must be positive")
        unknown = [level for level in self.purge_levels if level not in PURGE_LEVELS]
        if unknown:
            raise ConfigError(f"Unknown purge level(s): {', '.join(unknown)}")

    @property
    def forge_cache_dir(self) -> Path:
        return self.cache_dir / "forge"

    @property
    def modules_cache_dir(self) -> Path:
        return self.cache_dir / "modules"

    @property
    def env_cache_dir(self) -> Path:
        return self.cache_dir / "environments"

    def ensure_cache_dirs(self) -> None:
        for directory in (self.cache_dir, self.forge_cache_dir,
                          self.modules_cache_dir, self.env_cache_dir):
            if directory.exists() and not directory.is_dir():
                raise ConfigError(f"{directory} exists, but is not a directory!")
            directory.mkdir(parents=True, exist_ok=True)
            if not os.access(directory, os.W_OK):
                raise ConfigError(f"{directory} exists, but is not writable!")

    def purges(self, level: str) -> bool:
        return level in self.purge_levels

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> "DeployConfig":
        """Load the YAML configuration file, applying keyword ``overrides`` last."""

        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"There was an error reading the config file {path}", e)

        try:
            data = yaml.safe_load(_strip_ruby_symbols(text)) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"YAML unmarshal error in {path}", e)
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} does not contain a mapping")

        return cls.from_dict(data, **overrides)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **overrides: Any) -> "DeployConfig":
        # the deploy hash takes precedence over the top level settings
        deploy = data.get("deploy") or {}
        merged = {**data, **deploy}

        cache_dir = os.environ.get("ENVLET_CACHEDIR") or merged.get("cachedir")
        if not cache_dir:
            raise ConfigError("cachedir setting missing!")

        sources = {
            name: SourceConfig(
                name=name,
                remote=settings.get("remote", ""),
                basedir=settings.get("basedir", ""),
                prefix=str(settings.get("prefix", "")),
                private_key=settings.get("private_key"),
                force_forge_versions=bool(settings.get("force_forge_versions", False)),
                warn_missing_branch=bool(settings.get("warn_if_branch_is_missing", False)),
                error_missing_branch=bool(settings.get("error_if_branch_is_missing", False)),
                exit_if_unreachable=bool(settings.get("exit_if_unreachable", False)),
                invalid_branches=settings.get("invalid_branches") or "correct_and_warn",
            )
            for name, settings in (merged.get("sources") or {}).items()
        }

        forge = merged.get("forge") or {}
        kwargs: Dict[str, Any] = {
            "cache_dir": Path(cache_dir),
            "sources": sources,
            "forge_base_url": merged.get("forge_base_url") or forge.get("baseurl") or DEFAULT_FORGE_BASE_URL,
            "use_cache_fallback": bool(merged.get("use_cache_fallback", False)),
            "git_private_key": (merged.get("git") or {}).get("private_key"),
            "retry_git_commands": bool(merged.get("retry_git_commands", False)),
            "ignore_unreachable_modules": bool(merged.get("ignore_unreachable_modules", False)),
            "purge_allowlist": list(merged.get("purge_allowlist") or []),
            "deployment_purge_allowlist": list(merged.get("deployment_purge_allowlist") or []),
            "purge_skiplist": list(merged.get("purge_skiplist") or []),
            "postrun": list(merged.get("postrun") or []),
        }
        if merged.get("timeout"):
            kwargs["timeout"] = int(merged["timeout"])
        if merged.get("maxworker"):
            kwargs["max_workers"] = int(merged["maxworker"])
        if merged.get("maxextractworker"):
            kwargs["max_extract_workers"] = int(merged["maxextractworker"])
        if merged.get("purge_levels"):
            kwargs["purge_levels"] = list(merged["purge_levels"])
        if merged.get("forge_cache_ttl"):
            try:
                kwargs["forge_cache_ttl"] = parse_duration(merged["forge_cache_ttl"])
            except ValueError as e:
                raise ConfigError(f"Invalid forge_cache_ttl setting: {e}")

        kwargs.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**kwargs)


def _strip_ruby_symbols(text: str) -> str:
    """Turn ``:cachedir: /x`` style Ruby symbol keys into plain YAML keys."""

    return "\n".join(re.sub(r"^(\s*):", r"\1", line) for line in text.splitlines())


__all__ = [
    "DEFAULT_FORGE_BASE_URL",
    "PURGE_LEVELS",
    "parse_duration",
    "SourceConfig",
    "DeployConfig",
]
