"""
On-disk cache of Forge module releases.

Layout below the Forge cache directory::

    {author}-{name}-{version}/               extracted release
    {author}-{name}-{version}.tar.gz         downloaded archive
    {author}-{name}-latest                   symlink to the newest release
    {author}-{name}-latest-last-checked      last /v3/modules response body

Each version request variant is resolved by its own coroutine:
``_ensure_latest``, ``_ensure_present`` and ``_ensure_pinned``.
"""

import asyncio
import hashlib
import json
import os
import shutil
import tempfile
import time
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import httpx

from ..core.context import SyncContext
from ..infrastructure.error_handler import (
    ForgeModuleNotFoundError,
    IntegrityError,
    MaterializationError,
    RegistryError,
)
from ..infrastructure.logger import logger
from ..infrastructure.retry_manager import RetryManager
from ..infrastructure.stream import QueueReader, StreamTee, run_in_thread
from ..models import (
    LATEST,
    PRESENT,
    DeployConfig,
    ForgeModuleSpec,
    ForgeRelease,
    Latest,
    ModuleMetadata,
    Pinned,
    Present,
)
from .forge_api import ForgeAPIClient, ModuleQuery
from .materializer import Materializer, create_or_purge_dir, purge_path


HASH_CHUNK = 65536


def _digest(reader: QueueReader, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    try:
        for chunk in iter(lambda: reader.read(HASH_CHUNK), b""):
            digest.update(chunk)
    except BaseException:
        reader.abandon()
        raise
    return digest.hexdigest()


def _save(reader: QueueReader, path: Path) -> int:
    logger.debug(f"Trying to create {path}")
    written = 0
    try:
        with open(path, "wb") as out:
            for chunk in iter(lambda: reader.read(HASH_CHUNK), b""):
                out.write(chunk)
                written += len(chunk)
    except BaseException:
        reader.abandon()
        raise
    logger.debug(f"Finished creating {path}")
    return written


class ForgeCacheManager:
    """
    Owns the Forge cache directory of one deployment run.

    Args:
        config: Deployment settings (cache location, fallback, checksums)
        api: Registry client
        context: Run context receiving latest versions, notices and timings
        materializer: Used for archive extraction and module population
        retry_manager: Retries transient registry errors
    """

    def __init__(
        self,
        config: DeployConfig,
        api: ForgeAPIClient,
        context: SyncContext,
        materializer: Materializer,
        retry_manager: Optional[RetryManager] = None,
    ):
        self.config = config
        self.api = api
        self.context = context
        self.materializer = materializer
        self.retry_manager = retry_manager or RetryManager.from_config(config.retry)
        self.cache_dir = Path(config.forge_cache_dir)
        self._extract_semaphore = asyncio.Semaphore(config.max_extract_workers)

    ####
    ##      CACHE LAYOUT
    #####
    def version_dir(self, slug: str, version: str) -> Path:
        return self.cache_dir / f"{slug}-{version}"

    def latest_dir(self, slug: str) -> Path:
        return self.cache_dir / f"{slug}-{LATEST}"

    def last_checked_file(self, slug: str) -> Path:
        return self.cache_dir / f"{slug}-{LATEST}-last-checked"

    def archive_path(self, slug: str, version: str) -> Path:
        return self.cache_dir / f"{slug}-{version}.tar.gz"

    ####
    ##      RESOLUTION
    #####
    async def ensure(self, spec: ForgeModuleSpec) -> None:
        """Make sure the release ``spec`` asks for is present in the cache."""

        request = spec.request
        if isinstance(request, Latest):
            await self._ensure_latest(spec)
        elif isinstance(request, Present):
            await self._ensure_present(spec)
        elif isinstance(request, Pinned):
            await self._ensure_pinned(spec, request.version)

    async def _ensure_latest(self, spec: ForgeModuleSpec) -> None:
        slug = spec.slug
        latest_dir = self.latest_dir(slug)

        if latest_dir.is_dir() and spec.cache_ttl and self._is_fresh(slug, spec.cache_ttl):
            logger.debug(
                f"No need to check forge API if latest version of module {slug} has been updated, "
                f"because {self.last_checked_file(slug)} is not older than {spec.cache_ttl}"
            )
            metadata = ModuleMetadata.read(latest_dir / "metadata.json")
            if metadata is not None:
                await self.context.latest.set(slug, metadata.version)
            cached = self._read_last_checked(slug)
            if cached is not None:
                self._check_deprecation(slug, cached)
            return

        if latest_dir.is_dir():
            logger.debug(f"check forge API if latest version of module {slug} has been updated")
        else:
            logger.debug(f"{latest_dir} does not exist, fetching module")

        query = await self._query(spec)
        if query is None:
            return
        version = query.release.version

        if self._points_to(slug, version):
            logger.debug(f"No reason to re-symlink {latest_dir} again")
            return
        if f"{slug}-{version}" in self.context.forge_keys:
            logger.debug(
                f"no need to fetch Forge module {slug} in latest, because latest is {version} "
                "and that will already be fetched"
            )
            self._point_latest(slug, version)
            return

        self._point_latest(slug, version)
        await self._download(spec, version, query.release)

    async def _ensure_present(self, spec: ForgeModuleSpec) -> None:
        slug = spec.slug
        latest_dir = self.latest_dir(slug)
        if latest_dir.is_dir():
            logger.debug(f"Nothing to do for module {spec.key}, because {latest_dir} exists")
            return
        if f"{slug}-{LATEST}" in self.context.forge_keys:
            logger.debug(f"we got {spec.key}, but no {latest_dir} to use, but -latest is already being fetched")
            return
        logger.debug(f"we got {spec.key}, but no {latest_dir} to use. Getting -latest")
        await self._ensure_latest(replace(spec, version=LATEST))

    async def _ensure_pinned(self, spec: ForgeModuleSpec, version: str) -> None:
        slug = spec.slug
        version_dir = self.version_dir(slug, version)
        if version_dir.is_dir():
            logger.debug(f"Using cache for {slug} in version {version} because {version_dir} exists")
            cached = self._read_last_checked(slug)
            if cached is not None:
                self._check_deprecation(slug, cached)
            # cached releases are checked again whenever a checksum is requested
            if self.config.checksum_verification or spec.sha256sum:
                await self._download(spec, version)
            return

        try:
            release = await self._get_release(spec, version)
        except (httpx.TransportError, RegistryError) as e:
            if isinstance(e, ForgeModuleNotFoundError):
                raise
            if not self.config.use_cache_fallback:
                if isinstance(e, RegistryError):
                    raise
                raise RegistryError(f"Error while querying metadata for Forge module {spec.key}", e)
            logger.warning(f"Forge API error for module {spec.key}, will try to use the cache: {e}")
            return
        await self._download(spec, version, release)

    ####
    ##      REGISTRY ACCESS
    #####
    async def _query(self, spec: ForgeModuleSpec) -> Optional[ModuleQuery]:
        slug = spec.slug
        try:
            query = await self.retry_manager.execute(self.api.get_module, slug, spec.base_url)
        except ForgeModuleNotFoundError:
            raise
        except (httpx.TransportError, RegistryError) as e:
            if self.config.use_cache_fallback:
                logger.warning(f"Forge API error, trying to use cache for module {slug}")
                await self.latest_cached_version(spec)
                return None
            if isinstance(e, RegistryError):
                raise
            raise RegistryError(f"Error while issuing the HTTP request for Forge module {slug}", e)

        if query is None:
            return None

        self.context.statistics.forge_query_seconds += query.duration
        last_checked = self.last_checked_file(slug)
        logger.debug(f"writing last-checked file {last_checked}")
        last_checked.write_text(query.body, encoding="utf-8")

        self._check_deprecation(slug, query.release)
        logger.debug(f"found version {query.release.version} for {slug}-latest")
        await self.context.latest.set(slug, query.release.version)
        return query

    async def _get_release(self, spec: ForgeModuleSpec, version: str) -> ForgeRelease:
        return await self.retry_manager.execute(self.api.get_release, spec.slug, version, spec.base_url)

    def _is_fresh(self, slug: str, ttl: timedelta) -> bool:
        try:
            mtime = self.last_checked_file(slug).stat().st_mtime
        except OSError:
            return False
        return datetime.fromtimestamp(mtime) + ttl > datetime.now()

    def _read_last_checked(self, slug: str) -> Optional[ForgeRelease]:
        try:
            body = self.last_checked_file(slug).read_text(encoding="utf-8")
            return ForgeRelease.from_module_json(json.loads(body), needs_get=False)
        except (OSError, ValueError):
            return None

    def _check_deprecation(self, slug: str, release: ForgeRelease) -> None:
        if not release.is_deprecated:
            return
        notice = f"Forge module {slug} has been deprecated by its author since {release.deprecated_at}"
        if release.superseded_by:
            notice += f" The author has suggested {release.superseded_by} as its replacement"
        self.context.add_deprecation(notice)

    ####
    ##      LATEST ALIAS
    #####
    def _points_to(self, slug: str, version: str) -> bool:
        latest_dir = self.latest_dir(slug)
        if not latest_dir.is_symlink():
            return False
        target = Path(os.readlink(latest_dir))
        return target.name == f"{slug}-{version}" and target.is_dir()

    def _point_latest(self, slug: str, version: str) -> None:
        """Re-point the ``-latest`` alias by removing and recreating the symlink."""

        latest_dir = self.latest_dir(slug)
        target = self.version_dir(slug, version).absolute()
        if latest_dir.is_symlink() and Path(os.readlink(latest_dir)) == target:
            return
        if latest_dir.is_symlink() or latest_dir.exists():
            logger.debug(f"Trying to remove symlink: {latest_dir}")
            purge_path(latest_dir)
        logger.debug(f"trying to create symlink {latest_dir} pointing to {target}")
        os.symlink(target, latest_dir)

    async def latest_cached_version(self, spec: ForgeModuleSpec) -> str:
        """
        Fall back to the newest release already in the cache.

        Without a ``-latest`` alias the lexicographically greatest version
        directory wins and the alias is created for it.

        Raises:
            RegistryError: Nothing usable is cached
        """
        slug = spec.slug
        latest_dir = self.latest_dir(slug)

        if latest_dir.is_dir():
            version = Path(os.readlink(latest_dir)).name[len(slug) + 1:] if latest_dir.is_symlink() else LATEST
        else:
            candidates = [
                path for path in self.cache_dir.glob(f"{slug}-*")
                if path.is_dir() and not path.is_symlink() and path.name != latest_dir.name
            ]
            if not candidates:
                raise RegistryError(f"Could not find any cached version for Forge module {slug}")
            newest = max(candidates, key=lambda path: path.name)
            version = newest.name[len(slug) + 1:]
            self._point_latest(slug, version)

        await self.context.latest.set(slug, version)
        logger.warning(f"Using cached version {version} for {slug}-latest")
        return version

    async def resolve_latest_version(self, slug: str) -> str:
        version = await self.context.latest.get(slug)
        if version:
            return version
        latest_dir = self.latest_dir(slug)
        if latest_dir.is_symlink():
            return Path(os.readlink(latest_dir)).name[len(slug) + 1:]
        metadata = ModuleMetadata.read(latest_dir / "metadata.json")
        if metadata is not None:
            return metadata.version
        raise MaterializationError(f"Could not determine the latest version of Forge module {slug}")

    ####
    ##      DOWNLOAD
    #####
    async def _download(self, spec: ForgeModuleSpec, version: str,
                        release: Optional[ForgeRelease] = None, retries: int = 1) -> None:
        slug = spec.slug
        version_dir = self.version_dir(slug, version)

        if version_dir.is_dir():
            logger.debug(f"Using cache for Forge module {slug} version: {version}")
        else:
            async with self._extract_semaphore:
                await self._fetch_archive(spec, version)

        if not (self.config.checksum_verification or spec.sha256sum):
            return

        if release is None or not release.file_md5:
            release = await self._release_for_check(spec, version)
        if await self._verify(slug, version, release, spec.sha256sum):
            return

        purge_path(self.archive_path(slug, version))
        purge_path(version_dir)
        if retries <= 0:
            raise IntegrityError(f"Giving up for Puppet module {slug} version: {version}")
        logger.warning(f"Retrying download of Forge module {slug} version: {version}")
        await self._download(spec, version, release, retries - 1)

    async def _release_for_check(self, spec: ForgeModuleSpec, version: str) -> ForgeRelease:
        try:
            return await self._get_release(spec, version)
        except ForgeModuleNotFoundError:
            raise
        except (httpx.TransportError, RegistryError) as e:
            if self.config.use_cache_fallback and spec.sha256sum:
                logger.warning(
                    f"Forge API error for module {spec.key}, checking the cached archive "
                    f"against its sha256sum only: {e}"
                )
                return ForgeRelease(version=version)
            if isinstance(e, RegistryError):
                raise
            raise RegistryError(f"Error while querying metadata for Forge module {spec.key}", e)

    async def _fetch_archive(self, spec: ForgeModuleSpec, version: str) -> None:
        """
        Stream one archive to disk and into the extractor at the same time.

        A single network read feeds both consumers through a ``StreamTee``.
        Both land in a staging directory first and are only moved into the
        cache once the whole archive was read and extracted, so an aborted
        download never leaves a release behind that looks complete.
        """
        slug = spec.slug
        archive = self.archive_path(slug, version)
        version_dir = self.version_dir(slug, version)
        staging = Path(tempfile.mkdtemp(prefix=f".{slug}-{version}-", dir=self.cache_dir))
        tee = StreamTee()
        extract_reader = tee.add_reader("extract")
        save_reader = tee.add_reader("save")

        async def produce() -> None:
            try:
                async for chunk in self.api.iter_archive(slug, version, spec.base_url):
                    await asyncio.to_thread(tee.feed, chunk)
            except BaseException as e:
                tee.fail(e)
                raise
            tee.close()

        before = time.monotonic()
        try:
            # every consumer has to finish before the staging directory goes away
            outcomes = await asyncio.gather(
                produce(),
                run_in_thread(self.materializer.extract, extract_reader, staging / "tree", 1),
                run_in_thread(_save, save_reader, staging / archive.name),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, httpx.TransportError):
                    raise RegistryError(f"Error while GETing Forge module {slug}-{version}", outcome)
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome

            extracted = staging / "tree" / version_dir.name
            if not extracted.is_dir():
                raise MaterializationError(
                    f"Archive of Forge module {slug}-{version} does not contain {version_dir.name}/"
                )
            purge_path(version_dir)
            os.replace(staging / archive.name, archive)
            os.replace(extracted, version_dir)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        duration = time.monotonic() - before
        self.context.statistics.forge_extract_seconds += duration
        logger.debug(f"Downloading and extracting {archive.name} took {duration:.5f}s")

    async def _verify(self, slug: str, version: str, release: ForgeRelease,
                      sha256sum: Optional[str]) -> bool:
        """Hash the saved archive with MD5 and, if pinned, SHA-256 in one pass."""

        archive = self.archive_path(slug, version)
        if not archive.is_file():
            logger.warning(f"Can't access Forge module archive {archive}")
            return False

        tee = StreamTee()
        readers = [("md5", tee.add_reader("md5"))]
        if sha256sum:
            readers.append(("sha256", tee.add_reader("sha256")))

        def produce() -> int:
            size = 0
            try:
                with open(archive, "rb") as source:
                    for chunk in iter(lambda: source.read(HASH_CHUNK), b""):
                        tee.feed(chunk)
                        size += len(chunk)
            except OSError as e:
                tee.fail(e)
                raise
            tee.close()
            return size

        size, *digests = await asyncio.gather(
            run_in_thread(produce),
            *(run_in_thread(_digest, reader, algorithm) for algorithm, reader in readers),
        )
        calculated = dict(zip((algorithm for algorithm, _ in readers), digests))

        if release.file_md5 and calculated["md5"] != release.file_md5:
            logger.warning(
                f"calculated md5sum {calculated['md5']} for {archive} does not match "
                f"expected md5sum {release.file_md5}"
            )
            return False
        if sha256sum and calculated["sha256"] != sha256sum:
            logger.warning(
                f"calculated sha256sum {calculated['sha256']} for {archive} does not match "
                f"expected sha256sum {sha256sum}"
            )
            return False
        if release.file_size and size != release.file_size:
            logger.warning(
                f"calculated file size {size} for {archive} does not match "
                f"expected file size {release.file_size}"
            )
            return False
        logger.debug(f"Integrity check passed for {archive}")
        return True

    ####
    ##      MATERIALIZATION
    #####
    async def sync_to_module_dir(self, spec: ForgeModuleSpec, target_dir: Path,
                                 environment: Optional[str] = None) -> bool:
        """
        Bring ``target_dir`` to the release ``spec`` resolves to.

        Returns:
            True when the directory needed (or, in dry-run mode, would need) a sync
        """
        slug = spec.slug
        target_dir = Path(target_dir)
        metadata_file = target_dir / "metadata.json"
        version = spec.version

        if version == PRESENT:
            if metadata_file.is_file():
                logger.debug(f"Nothing to do, found existing Forge module: {metadata_file}")
                return False
            version = LATEST
        if version == LATEST:
            version = await self.resolve_latest_version(slug)

        if target_dir.is_dir():
            metadata = ModuleMetadata.read(metadata_file)
            if metadata is not None and metadata.version == version:
                logger.debug(
                    f"Nothing to do, existing Forge module: {target_dir} has the same version "
                    f"{metadata.version} as the to be synced version: {version}"
                )
                return False
            if metadata is not None:
                logger.info(
                    f"Need to sync, because existing Forge module: {target_dir} has version "
                    f"{metadata.version} and the to be synced version is: {version}"
                )
            else:
                logger.debug(f"Need to purge {target_dir}, because it exists without a metadata.json")

        source_dir = self.version_dir(slug, version)
        if not source_dir.is_dir():
            if not self.config.use_cache_fallback:
                raise MaterializationError(f"Forge module not found in dir: {source_dir}")
            logger.warning(f"Failed to use {source_dir} Trying to use latest cached version of module {slug}")
            version = await self.latest_cached_version(spec)
            source_dir = self.version_dir(slug, version)

        self.context.statistics.need_sync_forge_count += 1
        if self.config.dry_run:
            logger.info(f"Would sync {target_dir} to Forge module {slug} version {version}")
            return True

        logger.info(f"Need to sync {target_dir}")
        before = time.monotonic()
        await asyncio.to_thread(self._repopulate, source_dir, target_dir)
        self.context.statistics.forge_extract_seconds += time.monotonic() - before
        self.context.record_change(target_dir, environment)
        return True

    def _repopulate(self, source_dir: Path, target_dir: Path) -> int:
        create_or_purge_dir(target_dir)
        return self.materializer.populate(source_dir, target_dir)


__all__ = ["ForgeCacheManager"]
