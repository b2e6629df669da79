"""Cron-driven job loop for long-running calsync processes.

Each job carries a cron expression evaluated with croniter in the configured
timezone.  Due jobs run one after another; a failing job is logged and its
next run is still scheduled, so one bad run never stops the loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo

from croniter import croniter
from opentelemetry import trace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledJob:
    name: str
    cron: str
    run: Callable[[], Awaitable[object]]


def _next_run(cron: str, *, now: datetime | None = None, timezone: tzinfo = UTC) -> datetime:
    """Compute the next run time for a cron expression, evaluated in *timezone*."""
    anchor = (now or datetime.now(UTC)).astimezone(timezone)
    next_run = croniter(cron, anchor).get_next(datetime)
    if next_run.tzinfo is None:
        next_run = next_run.replace(tzinfo=timezone)
    return next_run.astimezone(UTC)


async def tick(
    jobs: Sequence[ScheduledJob],
    next_runs: dict[str, datetime],
    *,
    now: datetime | None = None,
    timezone: tzinfo = UTC,
) -> int:
    """Run every job whose next run time has passed and advance its schedule.

    Returns the number of jobs that completed without raising.
    """
    tracer = trace.get_tracer("calsync")
    with tracer.start_as_current_span("calsync.tick") as span:
        current = now or datetime.now(UTC)
        due = [job for job in jobs if next_runs[job.name] <= current]
        span.set_attribute("jobs_due", len(due))

        completed = 0
        for job in due:
            try:
                await job.run()
                completed += 1
                logger.info("Scheduled job %s completed", job.name)
            except Exception:
                logger.exception("Scheduled job %s failed", job.name)

            # Always advance, whether the job succeeded or failed
            next_runs[job.name] = _next_run(job.cron, now=current, timezone=timezone)
            logger.debug("Next %s run at %s", job.name, next_runs[job.name].isoformat())

        span.set_attribute("jobs_run", completed)
        return completed


async def run_schedule(
    jobs: Sequence[ScheduledJob],
    *,
    timezone: tzinfo = UTC,
    max_ticks: int | None = None,
) -> None:
    """Run *jobs* on their cron schedules until cancelled.

    ``max_ticks`` bounds the number of wake-ups, mainly for tests.
    """
    if not jobs:
        raise ValueError("run_schedule needs at least one job")
    names = [job.name for job in jobs]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate scheduled job names: {', '.join(names)}")

    start = datetime.now(UTC)
    next_runs = {job.name: _next_run(job.cron, now=start, timezone=timezone) for job in jobs}
    for job in jobs:
        logger.info(
            "Scheduled job %s (%s), first run at %s",
            job.name,
            job.cron,
            next_runs[job.name].isoformat(),
        )

    ticks = 0
    while max_ticks is None or ticks < max_ticks:
        wake_at = min(next_runs.values())
        delay = (wake_at - datetime.now(UTC)).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        await tick(jobs, next_runs, now=max(wake_at, datetime.now(UTC)), timezone=timezone)
        ticks += 1
