"""
Retry helper with exponential backoff for coroutine based operations.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .error_handler import RETRYABLE_ERRORS
from .logger import logger


@dataclass
class RetryConfig:
    """Backoff settings, kept separate so they can live in ``DeployConfig``."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0


class RetryManager:
    """Re-runs a coroutine function on transient errors with exponential backoff."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryManager":
        return cls(
            max_retries=config.max_retries,
            base_delay=config.initial_delay,
            max_delay=config.max_delay,
            exponential_base=config.backoff_factor,
        )

    def _calculate_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.8, 1.2)
        return delay

    async def execute(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func(*args, **kwargs)``, retrying on ``RETRYABLE_ERRORS``.

        Returns:
            Whatever ``func`` returns on its first successful attempt

        Raises:
            The last exception once all attempts failed, or any
            non-retryable exception immediately
        """
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            try:
                return await func(*args, **kwargs)
            except RETRYABLE_ERRORS as e:
                if attempt + 1 >= attempts:
                    logger.error(f"All {attempts} attempts failed, giving up: {e}")
                    raise
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)


__all__ = ["RetryConfig", "RetryManager"]
