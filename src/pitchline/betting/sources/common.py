"""Shared async HTTP utilities for result sources."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping

import requests

from ..errors import PermanentAPIError, TransientAPIError
from ..retry import is_retryable_status


class AsyncHTTPClient:
    """Very small async wrapper around :mod:`requests` for our sources."""

    def __init__(self, timeout: float | None = None, *, session: requests.Session | None = None) -> None:
        self._session = session or requests.Session()
        self._timeout = timeout

    async def get_json(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, lambda: self._request_json(url, params=params, headers=headers)
        )

    def _request_json(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        try:
            response = self._session.get(url, params=params, headers=headers, timeout=self._timeout)
        except (requests.Timeout, requests.ConnectionError) as err:
            raise TransientAPIError(f"GET {url} failed: {err}") from err
        status = response.status_code
        if is_retryable_status(status):
            raise TransientAPIError(f"GET {url} returned {status}", status=status)
        if status >= 400:
            raise PermanentAPIError(f"GET {url} returned {status}", status=status)
        return response.json()

    async def aclose(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._session.close)


class RateLimiter:
    """Spaces calls at least ``1 / requests_per_second`` apart."""

    def __init__(self, requests_per_second: float | None) -> None:
        self._interval = 0.0
        if requests_per_second and requests_per_second > 0:
            self._interval = 1.0 / requests_per_second
        self._lock = asyncio.Lock()
        self._last_call = 0.0

    @classmethod
    def from_delay(cls, delay_seconds: float) -> "RateLimiter":
        return cls(1.0 / delay_seconds if delay_seconds > 0 else None)

    @property
    def interval(self) -> float:
        return self._interval

    async def wait(self) -> None:
        if self._interval <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            wait_time = self._interval - (now - self._last_call)
            if wait_time > 0:
                await asyncio.sleep(wait_time)
            self._last_call = time.monotonic()
