"""Abstract result-source interfaces.

A result source answers one question: what is the current state of a
fixture?  Responses may omit any individual stat (corners, cards, fouls),
so sources return :class:`FixtureResult` objects whose stat fields are
independently optional.
"""

from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import Iterable, Mapping

from ..models import FixtureResult
from ..retry import RetryPolicy

logger = logging.getLogger(__name__)


class ResultSource(ABC):
    """Base class for result sources with retry and timeout handling."""

    name: str = "generic"

    def __init__(self, *, retry: RetryPolicy | None = None) -> None:
        self.retry = retry or RetryPolicy()
        self.calls = 0

    async def fetch_result(self, fixture_id: int) -> FixtureResult | None:
        """Fetch one fixture, retrying transient failures.

        ``None`` means the source does not know the fixture yet.
        """

        async def attempt() -> FixtureResult | None:
            self.calls += 1
            return await self._fetch_result_impl(fixture_id)

        return await self.retry.call(attempt, label=f"{self.name} fixture {fixture_id}")

    @abstractmethod
    async def _fetch_result_impl(self, fixture_id: int) -> FixtureResult | None:
        """Implementation hook for subclasses."""

    async def aclose(self) -> None:
        return None


class StaticResultSource(ResultSource):
    """Deterministic source used in tests and local development."""

    name = "static"

    def __init__(
        self,
        results: Iterable[FixtureResult] = (),
        *,
        failures: Mapping[int, list[Exception]] | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(retry=retry or RetryPolicy(max_attempts=1, jitter=0.0, timeout=None))
        self._results = {result.fixture_id: result for result in results}
        self._failures = {key: list(value) for key, value in (failures or {}).items()}

    def add(self, result: FixtureResult) -> None:
        self._results[result.fixture_id] = result

    async def _fetch_result_impl(self, fixture_id: int) -> FixtureResult | None:
        queued = self._failures.get(fixture_id)
        if queued:
            raise queued.pop(0)
        result = self._results.get(fixture_id)
        logger.debug("Static source %s fixture %s", "hit" if result else "miss", fixture_id)
        return dataclasses.replace(result) if result else None


__all__ = ["ResultSource", "StaticResultSource"]
