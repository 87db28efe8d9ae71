"""
Error types and error mapping helpers for envlet.

Every fatal condition of a deployment is raised as a subclass of
``DeployError``. ``handle_api_error`` translates errors of the registry
client into that hierarchy.
"""

import functools
from typing import Callable, Optional, Tuple, Type

import httpx


####
##      EXCEPTIONS
#####
class DeployError(Exception):
    """Base error of a deployment run."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.original_error is not None:
            return f"{self.message} (Original: {self.original_error})"
        return self.message


class ConfigError(DeployError):
    """Invalid or incomplete configuration."""


class ManifestError(DeployError):
    """Declaration error in a manifest file."""

    def __init__(self, message: str, path: Optional[str] = None, line: Optional[str] = None):
        self.path = path
        self.line = line
        text = message
        if path:
            text += f" in {path}"
        if line:
            text += f" line: {line}"
        super().__init__(text)


class RegistryError(DeployError):
    """The Forge registry answered with an error or could not be reached."""


class ForgeModuleNotFoundError(RegistryError):
    """The registry does not know the requested module or release."""


class RateLimitError(RegistryError):
    """The registry asked us to slow down."""


class IntegrityError(DeployError):
    """A downloaded archive does not match its expected checksum or size."""


class GitCommandError(DeployError):
    """An external git command failed."""


class RemoteUnreachableError(GitCommandError):
    """A git remote or tree could not be fetched."""


class MaterializationError(DeployError):
    """Populating a target directory failed."""


RETRYABLE_ERRORS: Tuple[Type[Exception], ...] = (
    httpx.TransportError,
    RateLimitError,
    ConnectionError,
    TimeoutError,
)


####
##      API ERROR MAPPING
#####
def translate_error(error: Exception) -> Exception:
    if isinstance(error, DeployError):
        return error

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        url = str(error.request.url)
        if status == 404:
            return ForgeModuleNotFoundError(
                f"Received 404 from Forge using URL {url} "
                "Does the module really exist and is it correctly named?",
                error,
            )
        if status == 429:
            return RateLimitError(f"Forge rate limit hit for {url}", error)
        return RegistryError(f"Unexpected response code {status} while GETing {url}", error)

    if isinstance(error, httpx.TransportError):
        return RegistryError(f"Error while issuing the HTTP request: {error}", error)

    return DeployError(f"Unexpected error: {error}", error)


def handle_api_error(func: Callable) -> Callable:
    """Translate errors raised by a registry coroutine into ``DeployError``s.

    Transport errors are left untouched so the ``RetryManager`` can still
    retry them; everything else is translated.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except httpx.TransportError:
            raise
        except Exception as e:
            raise translate_error(e) from e
    return wrapper


__all__ = [
    "DeployError",
    "ConfigError",
    "ManifestError",
    "RegistryError",
    "ForgeModuleNotFoundError",
    "RateLimitError",
    "IntegrityError",
    "GitCommandError",
    "RemoteUnreachableError",
    "MaterializationError",
    "RETRYABLE_ERRORS",
    "translate_error",
    "handle_api_error",
]
