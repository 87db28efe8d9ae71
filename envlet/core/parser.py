"""
Parser for the Puppetfile manifest DSL.

Parsing happens in two passes over the prepared (comment free, continuation
joined) logical lines. The first pass only decides the kind of every line;
the second extracts full module specs once the kind is final. A ``mod`` line
written in Forge notation that carries a ``:git`` or ``:local`` attribute is
therefore classified as a Git module up front, with its author segment
stripped, and no re-parse of the document is ever needed.
"""

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..infrastructure.error_handler import ManifestError
from ..infrastructure.logger import logger
from ..models import (
    LATEST,
    PRESENT,
    ForgeModuleSpec,
    GitModuleSpec,
    ModuleManifest,
    parse_duration,
)


MAX_GIT_ATTRIBUTES = 4
TREE_ATTRIBUTES = ("commit", "tag", "branch", "ref", "link")
GIT_ATTRIBUTES = (
    "git", "branch", "tag", "commit", "ref", "link",
    "ignore_unreachable", "fallback", "install_path", "local", "use_ssh_agent",
)
CONTROL_BRANCH = "control_branch"

_TRUE = ("1", "t", "T", "TRUE", "true", "True")
_FALSE = ("0", "f", "F", "FALSE", "false", "False")

_MODULEDIR = re.compile(r"""^\s*moduledir\s+['"]?([^'"]+?)['"]?\s*$""")
_FORGE_BASE_URL = re.compile(r"""^\s*forge(?:\.baseUrl)?\s+['"]?([^'"]+?)['"]?\s*$""")
_FORGE_CACHE_TTL = re.compile(r"""^\s*forge\.cacheTtl\s+['"]?([^'"]+?)['"]?\s*$""")
_MOD = re.compile(r"""^\s*mod\s*\(?\s*['"]([^'"]*)['"]\s*(?:,(.*?))?\)?\s*$""")
_KEYED = re.compile(r"""^(?::([\w-]+)\s*=>|([\w-]+):(?!:))\s*(.+)$""")
_GIT_MARKER = re.compile(r"""(?:^|,)\s*(?::(?:git|local)\s*=>|(?:git|local):)""")


class LineKind(Enum):
    """What a logical manifest line declares."""

    MODULEDIR = "moduledir"
    FORGE_BASE_URL = "forge base url"
    FORGE_CACHE_TTL = "forge cache ttl"
    FORGE_MODULE = "forge module"
    GIT_MODULE = "git module"
    UNKNOWN = "unknown"


@dataclass
class ClassifiedLine:
    text: str
    kind: LineKind


####
##      PREPARATION
#####
def _strip_comment(line: str) -> str:
    quote = None
    for index, char in enumerate(line):
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "#":
            return line[:index]
    return line


def prepare(text: str, path: Optional[str] = None) -> str:
    """
    Normalize manifest text into one logical declaration per line.

    Blank lines and comments are removed and every line ending in a comma is
    joined with its continuation. Running it on its own output is a no-op.

    Raises:
        ManifestError: The last declaration still ends in a comma
    """
    logical: List[str] = []
    pending = ""

    for raw in text.splitlines():
        line = _strip_comment(raw).strip()
        if not line:
            continue
        pending += line
        if not pending.endswith(","):
            logical.append(pending)
            pending = ""

    if pending:
        raise ManifestError("Found dangling attribute (trailing comma without a following attribute)", path, pending)

    return "\n".join(logical)


def parse_bool(value: str) -> bool:
    """Boolean parsing with the accepted spellings of ``1``/``t``/``true`` and friends."""

    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"invalid boolean: {value}")


def _split_attributes(text: str) -> List[str]:
    """Split on commas that are not inside quotes."""

    parts: List[str] = []
    current = ""
    quote = None
    for char in text:
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == ",":
            parts.append(current.strip())
            current = ""
            continue
        current += char
    parts.append(current.strip())
    return parts


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


####
##      MANIFEST PARSER
#####
class ManifestParser:
    """
    Turns Puppetfile text into a ``ModuleManifest``.

    The parser is stateless between calls and never touches the network.
    """

    def __init__(
        self,
        force_forge_versions: bool = False,
        module_dir_override: Optional[str] = None,
        strict: bool = False,
    ):
        self.force_forge_versions = force_forge_versions
        self.module_dir_override = module_dir_override
        self.strict = strict

    def parse_file(
        self,
        path: Path,
        source: str = "",
        branch: str = "",
        private_key: Optional[str] = None,
    ) -> ModuleManifest:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ManifestError(f"Could not read manifest: {e}", str(path))
        return self.parse(text, str(path), source=source, branch=branch, private_key=private_key)

    def parse(
        self,
        text: str,
        path: str = "Puppetfile",
        source: str = "",
        branch: str = "",
        private_key: Optional[str] = None,
    ) -> ModuleManifest:
        """
        Parse manifest ``text``.

        Args:
            text: Raw or already prepared manifest content
            path: File name used in diagnostics
            source: Owning source id
            branch: Owning environment name
            private_key: SSH key the Git modules of this manifest use

        Returns:
            The populated ModuleManifest

        Raises:
            ManifestError: On any declaration error
        """
        logger.debug(f"Trying to parse: {path}")

        lines = [ClassifiedLine(line, self.classify(line)) for line in prepare(text, path).splitlines()]

        manifest = ModuleManifest(
            path=path,
            source=source,
            branch=branch,
            module_dir=self.module_dir_override or "modules",
            private_key=private_key,
        )
        for line in lines:
            self._extract(manifest, line)
        return manifest

    def classify(self, line: str) -> LineKind:
        """Decide what ``line`` declares without extracting anything."""

        if _MODULEDIR.match(line):
            return LineKind.MODULEDIR
        if _FORGE_CACHE_TTL.match(line):
            return LineKind.FORGE_CACHE_TTL
        if _FORGE_BASE_URL.match(line):
            return LineKind.FORGE_BASE_URL

        match = _MOD.match(line)
        if match:
            attributes = match.group(2) or ""
            if _GIT_MARKER.search(attributes):
                return LineKind.GIT_MODULE
            return LineKind.FORGE_MODULE
        return LineKind.UNKNOWN

    # extraction

    def _extract(self, manifest: ModuleManifest, line: ClassifiedLine) -> None:
        path = manifest.path

        if line.kind is LineKind.MODULEDIR:
            if self.module_dir_override:
                logger.debug(f"Ignoring moduledir directive in {path}, module directory is overridden")
            else:
                manifest.module_dir = _MODULEDIR.match(line.text).group(1)

        elif line.kind is LineKind.FORGE_BASE_URL:
            manifest.forge_base_url = _FORGE_BASE_URL.match(line.text).group(1)

        elif line.kind is LineKind.FORGE_CACHE_TTL:
            value = _FORGE_CACHE_TTL.match(line.text).group(1)
            try:
                manifest.forge_cache_ttl = parse_duration(value)
            except ValueError:
                raise ManifestError(
                    f"Can not convert value {value} of parameter forge.cacheTtl {value} "
                    "to a duration. Valid time units are 300ms, 1.5h or 2h45m.",
                    path, line.text,
                )

        elif line.kind is LineKind.FORGE_MODULE:
            self._extract_forge_module(manifest, line.text)

        elif line.kind is LineKind.GIT_MODULE:
            self._extract_git_module(manifest, line.text)

        elif line.text.lstrip().startswith(":"):
            raise ManifestError("Found attribute without a module declaration, missing trailing comma?", path, line.text)

        elif self.strict:
            raise ManifestError("Could not interpret line", path, line.text)

        else:
            logger.warning(f"Skipping unrecognized line in {path}: {line.text}")

    def _extract_forge_module(self, manifest: ModuleManifest, text: str) -> None:
        path = manifest.path
        full_name, attributes = _MOD.match(text).groups()

        author, name = _split_forge_name(full_name)
        if not author or not name:
            raise ManifestError(
                f"Forge module name is invalid, should be like puppetlabs/apt, but is: {full_name}",
                path, text,
            )
        if name in manifest.forge_modules:
            raise ManifestError(f"Duplicate forge module found for module {name}", path, text)
        if name in manifest.git_modules:
            raise ManifestError(f"Forge Puppet module with same name found for module {name}", path, text)

        version = PRESENT
        sha256sum = None
        seen = set()
        for position, attribute in enumerate(_split_attributes(attributes) if attributes and attributes.strip() else []):
            if not attribute:
                raise ManifestError("Found empty attribute, trailing comma?", path, text)
            keyed = _KEYED.match(attribute)
            if keyed is None:
                if position != 0:
                    raise ManifestError(f"Unexpected positional value {attribute} for module {name}", path, text)
                version = _unquote(attribute).lstrip(":")
                continue

            key = keyed.group(1) or keyed.group(2)
            if key in seen:
                raise ManifestError(f"Found duplicate attribute :{key} for module {name}", path, text)
            seen.add(key)
            if key == "sha256sum":
                sha256sum = _unquote(keyed.group(3))
            else:
                raise ManifestError(f"Unknown Forge module attribute :{key} for module {name}", path, text)

        if self.force_forge_versions and version in (PRESENT, LATEST):
            raise ManifestError(
                f"Found {version} Forge module version for module {author}/{name}, "
                "but force_forge_versions is enabled",
                path, text,
            )

        manifest.forge_modules[name] = ForgeModuleSpec(
            author=author,
            name=name,
            version=version,
            sha256sum=sha256sum,
            module_dir=manifest.module_dir,
            source=manifest.source,
        )

    def _extract_git_module(self, manifest: ModuleManifest, text: str) -> None:
        path = manifest.path
        full_name, attributes = _MOD.match(text).groups()
        name = _strip_author(full_name)

        if not name:
            raise ManifestError("Found Git module without a name", path, text)
        if "-" in name:
            logger.warning(f"Found invalid character '-' in Puppet module name {name} in {path} line: {text}")
        if name in manifest.git_modules:
            raise ManifestError(f"Duplicate module found for module {name}", path, text)
        if name in manifest.forge_modules:
            raise ManifestError(f"Git Puppet module with same name found for module {name}", path, text)

        values: Dict[str, str] = {}
        for attribute in _split_attributes(attributes or ""):
            keyed = _KEYED.match(attribute) if attribute else None
            if keyed is None:
                raise ManifestError(f"Trailing comma or invalid setting found for module {name}", path, text)
            key = (keyed.group(1) or keyed.group(2)).replace("-", "_")
            if key == "default_branch":
                key = "fallback"
            if key not in GIT_ATTRIBUTES:
                raise ManifestError(f"Unknown Git module attribute :{key} for module {name}", path, text)
            if key in values:
                raise ManifestError(f"Found duplicate attribute :{key} for module {name}", path, text)
            values[key] = _unquote(keyed.group(3))

        if "git" not in values and "local" not in values:
            raise ManifestError(f"Missing :git url for module {name}", path, text)
        if len(values) > MAX_GIT_ATTRIBUTES:
            raise ManifestError(f"Too many attributes for module {name}", path, text)

        conflicts = [key for key in TREE_ATTRIBUTES if key in values]
        if len(conflicts) > 1:
            ordered = sorted(conflicts, key=("branch", "commit", "tag", "ref", "link").index)
            raise ManifestError(
                "Found conflicting git attributes " + "".join(f":{key}, " for key in ordered).rstrip(),
                path, text,
            )

        spec = GitModuleSpec(git=values.get("git"), module_dir=manifest.module_dir)
        for key, value in values.items():
            if key == "branch" and value.lstrip(":") == CONTROL_BRANCH:
                spec.link = True
            elif key in ("branch", "tag", "commit", "ref", "install_path"):
                setattr(spec, key, value)
            elif key in ("link", "ignore_unreachable", "local", "use_ssh_agent"):
                try:
                    setattr(spec, key, parse_bool(value))
                except ValueError:
                    raise ManifestError(
                        f"Can not convert value {value} of parameter {key} to boolean for module {name}",
                        path, text,
                    )
            elif key == "fallback":
                spec.fallback = [item.strip() for item in value.split("|") if item.strip()]

        manifest.git_modules[name] = spec


def _split_forge_name(full_name: str) -> Tuple[str, str]:
    separator = "/" if "/" in full_name else "-"
    parts = full_name.split(separator)
    if len(parts) != 2 and separator == "/":
        return "", ""
    author, _, name = full_name.partition(separator)
    return author.strip(), name.strip()


def _strip_author(full_name: str) -> str:
    if "/" in full_name:
        return full_name.rsplit("/", 1)[-1]
    if "-" in full_name:
        return full_name.split("-", 1)[-1]
    return full_name


__all__ = ["LineKind", "ManifestParser", "parse_bool", "prepare"]
