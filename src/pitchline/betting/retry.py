"""Retry with exponential backoff for external API calls."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
from typing import Awaitable, Callable, TypeVar

from .errors import TransientAPIError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


def is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status < 600


@dataclasses.dataclass(slots=True)
class RetryPolicy:
    """``max_attempts`` tries with delays ``min(base * 2**(n-1) + U(0, jitter), max_delay)``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 1.0
    timeout: float | None = 30.0
    rng: random.Random = dataclasses.field(default_factory=random.Random, repr=False)
    sleep: Callable[[float], Awaitable[None]] = dataclasses.field(default=asyncio.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Backoff to wait after failed ``attempt`` (1-based)."""

        backoff = self.base_delay * (2 ** max(0, attempt - 1))
        if self.jitter:
            backoff += self.rng.uniform(0.0, self.jitter)
        return min(backoff, self.max_delay)

    async def call(self, operation: Callable[[], Awaitable[T]], *, label: str = "call") -> T:
        """Await ``operation`` until it succeeds or attempts run out.

        Only :class:`TransientAPIError` and timeouts are retried; anything
        else propagates immediately.  The last transient error is re-raised
        once the ceiling is hit.
        """

        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.timeout is None:
                    return await operation()
                return await asyncio.wait_for(operation(), timeout=self.timeout)
            except (TransientAPIError, asyncio.TimeoutError) as err:
                if attempt >= self.max_attempts:
                    logger.warning("%s failed after %d attempts: %s", label, attempt, err)
                    if isinstance(err, asyncio.TimeoutError):
                        raise TransientAPIError(f"{label} timed out") from err
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    "%s attempt %d/%d failed (%s); retrying in %.2fs",
                    label,
                    attempt,
                    self.max_attempts,
                    err,
                    delay,
                )
                await self.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["RETRYABLE_STATUSES", "RetryPolicy", "is_retryable_status"]
