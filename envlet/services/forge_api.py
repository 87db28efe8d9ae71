"""
HTTP client for the Forge module registry API.
"""

import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from .. import __version__
from ..infrastructure.error_handler import handle_api_error, translate_error
from ..infrastructure.logger import logger
from ..models import DEFAULT_FORGE_BASE_URL, ForgeRelease


USER_AGENT = f"envlet/{__version__}"
EXCLUDE_FIELDS = "readme,changelog,license,uri,reference,tasks,plans,docs"
CHUNK_SIZE = 65536


@dataclass
class ModuleQuery:
    """Result of a latest-version lookup."""

    release: ForgeRelease
    body: str
    duration: float


class ForgeAPIClient:
    """
    Thin async wrapper around the ``/v3`` registry endpoints.

    Proxy settings are taken from the environment (``HTTP_PROXY``,
    ``HTTPS_PROXY``, ``NO_PROXY``).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_FORGE_BASE_URL,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            follow_redirects=True,
            trust_env=True,
            transport=transport,
        )

    async def __aenter__(self) -> "ForgeAPIClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, base_url: Optional[str], path: str) -> str:
        return (base_url or self.base_url).rstrip("/") + path

    @handle_api_error
    async def get_module(self, slug: str, base_url: Optional[str] = None) -> Optional[ModuleQuery]:
        """
        Look up the current release of module ``slug``.

        Returns:
            ModuleQuery with the parsed release and the raw body, or None
            when the registry answered ``304 Not Modified``

        Raises:
            ForgeModuleNotFoundError: The registry does not know the module
            RegistryError: Any other unexpected response
        """
        url = self._url(base_url, f"/v3/modules/{slug}")
        before = time.monotonic()
        response = await self._client.get(url, params={"exclude_fields": EXCLUDE_FIELDS})
        duration = time.monotonic() - before
        logger.debug(f"Querying Forge API {url} took {duration:.5f}s")

        if response.status_code == 304:
            logger.debug(f"Got 304 nothing to do for module {slug}")
            return None
        response.raise_for_status()

        body = response.text
        return ModuleQuery(ForgeRelease.from_module_json(response.json()), body, duration)

    @handle_api_error
    async def get_release(self, slug: str, version: str, base_url: Optional[str] = None) -> ForgeRelease:
        """Fetch checksum and size of one release."""

        url = self._url(base_url, f"/v3/releases/{slug}-{version}")
        logger.debug(f"GETing {url}")
        response = await self._client.get(url)
        response.raise_for_status()
        return ForgeRelease.from_release_json(response.json())

    async def iter_archive(self, slug: str, version: str,
                           base_url: Optional[str] = None) -> AsyncIterator[bytes]:
        """Stream the release archive in chunks."""

        url = self._url(base_url, f"/v3/files/{slug}-{version}.tar.gz")
        logger.debug(f"GETing {url}")
        async with self._client.stream("GET", url) as response:
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise translate_error(e) from e
            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                yield chunk


__all__ = ["ForgeAPIClient", "ModuleQuery", "USER_AGENT"]
