"""
Merges the module declarations of every environment into one work set.
"""

from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Dict, Mapping, Optional

from ..infrastructure.logger import logger
from ..models import ForgeModuleSpec, GitModuleSpec, ModuleManifest
from .context import SyncContext


@dataclass
class WorkSet:
    """Unique work items: Git remotes by URL, Forge releases by ``author-name-version``."""

    git: Dict[str, GitModuleSpec] = field(default_factory=dict)
    forge: Dict[str, ForgeModuleSpec] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.git) + len(self.forge)


def aggregate(
    manifests: Mapping[str, ModuleManifest],
    context: SyncContext,
    forge_base_url: Optional[str] = None,
    forge_cache_ttl: timedelta = timedelta(0),
) -> WorkSet:
    """
    Deduplicate the requirements of all ``manifests``.

    The first environment (in name order) declaring a remote or a release
    owns the work item; later ones reuse it. Manifests are left untouched,
    work items are copies carrying the propagated manifest settings.

    Args:
        manifests: Environment name to parsed manifest
        context: Run context; its latest table and Forge key set are reset
        forge_base_url: Registry URL used when a manifest sets none
        forge_cache_ttl: TTL used when a manifest sets none

    Returns:
        WorkSet with one entry per distinct remote and release
    """
    context.reset()
    work = WorkSet()

    for environment in sorted(manifests):
        manifest = manifests[environment]
        logger.debug(f"Resolving {environment}")

        for name, spec in manifest.git_modules.items():
            if spec.local or not spec.git:
                logger.debug(f"Skipping local module {name} of {environment}")
                continue
            if spec.git not in work.git:
                work.git[spec.git] = replace(
                    spec, private_key=spec.private_key or manifest.private_key
                )

        for spec in manifest.forge_modules.values():
            item = replace(
                spec,
                base_url=spec.base_url or manifest.forge_base_url or forge_base_url,
                cache_ttl=manifest.forge_cache_ttl or forge_cache_ttl,
            )
            if item.key not in work.forge:
                work.forge[item.key] = item

    context.forge_keys.update(work.forge)
    logger.debug(f"Found {len(work.git)} unique Git remotes and {len(work.forge)} unique Forge releases")
    return work


__all__ = ["WorkSet", "aggregate"]
