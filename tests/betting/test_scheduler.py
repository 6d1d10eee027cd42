from __future__ import annotations

import asyncio
import random

from pitchline.betting.jobs import JobContext, JobRunner
from pitchline.betting.scheduler import ScheduledJob, Scheduler
from pitchline.betting.settlement import SettlementEngine


def test_jobs_stop_after_max_runs() -> None:
    calls: list[int] = []

    async def tick() -> None:
        calls.append(1)

    async def scenario() -> Scheduler:
        scheduler = Scheduler()
        scheduler.add_job(tick, interval=0, max_runs=3)
        await asyncio.wait_for(scheduler.run(), timeout=5)
        return scheduler

    scheduler = asyncio.run(scenario())

    assert len(calls) == 3
    assert scheduler.jobs[0].runs == 3
    assert scheduler.jobs[0].name == "tick"


def test_failures_are_retried_with_backoff() -> None:
    outcomes = [RuntimeError("first"), RuntimeError("second"), None]

    async def flaky() -> None:
        outcome = outcomes.pop(0)
        if outcome is not None:
            raise outcome

    async def scenario() -> Scheduler:
        scheduler = Scheduler()
        scheduler.add_job(flaky, interval=0, retries=2, retry_backoff=0.0, max_runs=1, name="flaky")
        await asyncio.wait_for(scheduler.run(), timeout=5)
        return scheduler

    job = asyncio.run(scenario()).jobs[0]

    assert job.failures == 2
    assert job.runs == 1
    assert outcomes == []


def test_stop_interrupts_long_intervals() -> None:
    async def scenario() -> Scheduler:
        scheduler = Scheduler()

        async def once() -> None:
            scheduler.stop()

        scheduler.add_job(once, interval=3600, name="once")
        await asyncio.wait_for(scheduler.run(), timeout=5)
        return scheduler

    assert asyncio.run(scenario()).jobs[0].runs == 1


def test_next_delay_jitter_stays_in_bounds() -> None:
    async def noop() -> None:
        return None

    job = ScheduledJob(name="noop", action=noop, interval=10, jitter=2, rng=random.Random(1))
    delays = [job.next_delay() for _ in range(50)]
    assert all(8 <= delay <= 12 for delay in delays)
    assert ScheduledJob(name="noop", action=noop, interval=-5).next_delay() == 0.0


def test_batch_jobs_go_through_the_runner(store, clock) -> None:
    runner = JobRunner(JobContext(store=store, clock=clock, settlement=SettlementEngine(store, clock=clock)))

    async def scenario() -> None:
        scheduler = Scheduler()
        scheduler.add_batch_job(runner, "score-legs", options={"batch_size": 10}, interval=0, max_runs=2)
        await asyncio.wait_for(scheduler.run(), timeout=5)

    asyncio.run(scenario())

    rows = store.job_runs("score-legs")
    assert [row["status"] for row in rows] == ["ok", "ok"]


def test_empty_scheduler_returns_immediately() -> None:
    asyncio.run(asyncio.wait_for(Scheduler().run(), timeout=1))
