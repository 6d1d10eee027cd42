"""Periodic asyncio driver for the batch jobs."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import random
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .jobs import JobRunner

logger = logging.getLogger(__name__)


AsyncCallable = Callable[[], Awaitable[Any]]


@dataclasses.dataclass(slots=True)
class ScheduledJob:
    """A coroutine fired every ``interval`` seconds until stopped.

    Failures are retried after ``retry_backoff * attempt`` seconds up to
    ``retries`` times before the job falls back to its normal cadence.
    ``max_runs`` bounds the number of successful firings.
    """

    name: str
    action: AsyncCallable
    interval: float
    jitter: float = 0.0
    retries: int = 0
    retry_backoff: float = 2.0
    max_runs: int | None = None
    runs: int = 0
    failures: int = 0
    rng: random.Random = dataclasses.field(default_factory=random.Random, repr=False)

    def next_delay(self) -> float:
        delay = max(0.0, self.interval)
        if self.jitter and delay:
            delay = max(0.0, delay + self.rng.uniform(-self.jitter, self.jitter))
        return delay

    async def run(self, stop_event: asyncio.Event) -> None:
        attempt = 0
        while not stop_event.is_set():
            try:
                await self.action()
            except asyncio.CancelledError:
                raise
            except Exception:
                attempt += 1
                self.failures += 1
                logger.exception("Scheduled job %s failed (attempt %d)", self.name, attempt)
                if attempt <= self.retries:
                    if await _wait_or_stop(stop_event, max(0.0, self.retry_backoff) * attempt):
                        return
                    continue
                attempt = 0
            else:
                attempt = 0
                self.runs += 1
                if self.max_runs is not None and self.runs >= self.max_runs:
                    return
            delay = self.next_delay()
            if delay == 0:
                await asyncio.sleep(0)
                continue
            if await _wait_or_stop(stop_event, delay):
                return


async def _wait_or_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout``; True when the stop event fired first."""

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True


class Scheduler:
    """Manage a collection of scheduled asynchronous jobs."""

    def __init__(self) -> None:
        self._jobs: list[ScheduledJob] = []
        self._tasks: list[asyncio.Task[Any]] = []
        self._stop_event = asyncio.Event()

    async def __aenter__(self) -> "Scheduler":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    @property
    def jobs(self) -> Sequence[ScheduledJob]:
        return tuple(self._jobs)

    def add_job(
        self,
        action: AsyncCallable,
        *,
        interval: float,
        jitter: float = 0.0,
        retries: int = 0,
        retry_backoff: float = 2.0,
        max_runs: int | None = None,
        name: str | None = None,
    ) -> ScheduledJob:
        job = ScheduledJob(
            name=name or getattr(action, "__name__", "scheduled-job"),
            action=action,
            interval=interval,
            jitter=jitter,
            retries=retries,
            retry_backoff=retry_backoff,
            max_runs=max_runs,
        )
        self._jobs.append(job)
        return job

    def add_batch_job(
        self,
        runner: "JobRunner",
        job_name: str,
        *,
        options: Mapping[str, Any] | None = None,
        interval: float,
        jitter: float = 0.0,
        retries: int = 0,
        max_runs: int | None = None,
    ) -> ScheduledJob:
        """Fire ``runner.run(job_name, options)`` on a cadence.

        The runner reports item failures instead of raising, so a retry here
        only covers failures of the run itself (lock store unavailable...).
        """

        payload = dict(options or {})

        async def action() -> None:
            report = await runner.run_async(job_name, payload)
            logger.info("Scheduled %s finished with status %s", job_name, report.status)

        return self.add_job(
            action,
            interval=interval,
            jitter=jitter,
            retries=retries,
            max_runs=max_runs,
            name=job_name,
        )

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        """Run until ``stop`` is called or every job finishes."""

        if not self._jobs:
            return
        loop = asyncio.get_running_loop()
        self._stop_event.clear()
        self._tasks = [loop.create_task(job.run(self._stop_event), name=job.name) for job in self._jobs]
        stop_task = loop.create_task(self._stop_event.wait(), name="scheduler-stop")
        try:
            pending: set[asyncio.Task[Any]] = set(self._tasks)
            while pending and not stop_task.done():
                _, pending = await asyncio.wait(
                    pending | {stop_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                pending.discard(stop_task)
        finally:
            stop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_task
            await self.shutdown()

    async def shutdown(self) -> None:
        if not self._tasks:
            return
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


__all__ = ["ScheduledJob", "Scheduler"]
