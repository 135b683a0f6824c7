"""Cron scheduler running async jobs, optionally under a distributed lock."""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from redguard.core.errors import ValidationError
from redguard.core.guard import GuardOptions, LockGuard, generate_lock_name
from redguard.utils.logging import get_logger


logger = get_logger(__name__)

Job = Callable[[], Awaitable[Any]]


def _to_croniter(expression: str) -> str:
    # 6-part expressions carry seconds first, croniter expects them last
    parts = expression.split()
    if len(parts) == 6:
        parts = parts[1:] + parts[:1]
    return " ".join(parts)


def validate_cron_expression(expression: str) -> None:
    """Accept 5-part (minute first) or 6-part (second first) cron expressions."""
    if not expression or not isinstance(expression, str):
        raise ValidationError("Cron expression must be a non-empty string")
    parts = expression.split()
    if len(parts) not in (5, 6):
        raise ValidationError(f"Invalid cron format. Expected 5 or 6 parts, got {len(parts)}")
    if not croniter.is_valid(_to_croniter(expression)):
        raise ValidationError(f"Invalid cron expression: {expression}")


def _zone(timezone: str) -> dt.tzinfo:
    if timezone.upper() == "UTC":
        return dt.timezone.utc
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {timezone}") from exc


@dataclass(slots=True)
class ScheduledJob:
    name: str
    cron: str
    func: Job
    timezone: str
    lock: Optional[GuardOptions] = None
    runs: int = 0
    failures: int = 0

    def next_fire(self, now: Optional[dt.datetime] = None) -> dt.datetime:
        zone = _zone(self.timezone)
        base = (now or dt.datetime.now(zone)).astimezone(zone)
        return croniter(_to_croniter(self.cron), base).get_next(dt.datetime)


class CronScheduler:
    """Fires registered jobs on their cron schedule.

    Jobs registered with ``lock`` run through :meth:`LockGuard.run` using the job
    name as the lock resource, so only one process fires a given job at a time.
    """

    def __init__(self, *, guard: Optional[LockGuard] = None, timezone: str = "UTC") -> None:
        _zone(timezone)
        self.guard = guard
        self.timezone = timezone
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: List["asyncio.Task[None]"] = []

    def add_job(
        self,
        cron: str,
        func: Job,
        *,
        name: Optional[str] = None,
        timezone: Optional[str] = None,
        lock: Optional[GuardOptions] = None,
    ) -> ScheduledJob:
        validate_cron_expression(cron)
        tz = timezone or self.timezone
        _zone(tz)
        if lock is not None and self.guard is None:
            raise ValidationError("A LockGuard is required to schedule locked jobs")
        job_name = generate_lock_name(name, func)
        if job_name in self._jobs:
            raise ValidationError(f"Scheduled job {job_name} is already registered")
        job = ScheduledJob(name=job_name, cron=cron, func=func, timezone=tz, lock=lock)
        self._jobs[job_name] = job
        logger.debug("Schedule job %s registered with cron: %s", job_name, cron)
        return job

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"cron-{job.name}"))
        logger.info("Scheduler started with %d jobs", len(self._tasks))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def run_job(self, job: ScheduledJob) -> None:
        """Fire ``job`` once; failures are logged and counted, never raised."""
        logger.debug("The schedule job %s started.", job.name)
        job.runs += 1
        try:
            if job.lock is not None and self.guard is not None:
                method = getattr(job.func, "__name__", job.name)
                await self.guard.run(job.name, method, job.func, job.lock)
            else:
                await job.func()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.failures += 1
            logger.error("The schedule job %s failed: %s", job.name, exc)
        else:
            logger.debug("The schedule job %s completed.", job.name)

    async def _loop(self, job: ScheduledJob) -> None:
        while True:
            zone = _zone(job.timezone)
            now = dt.datetime.now(zone)
            fire_at = job.next_fire(now)
            await asyncio.sleep(max((fire_at - now).total_seconds(), 0))
            await self.run_job(job)
