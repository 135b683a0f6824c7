from __future__ import annotations

import asyncio
import datetime as dt
import functools
from unittest.mock import AsyncMock, MagicMock

import pytest

from redguard.core.errors import ValidationError
from redguard.core.guard import GuardOptions, LockGuard
from redguard.core.scheduler import CronScheduler, validate_cron_expression

UTC = dt.timezone.utc


@pytest.mark.parametrize("expression", ["*/5 * * * *", "0 0 12 * * MON-FRI", "30 2 * * 1"])
def test_valid_cron_expressions(expression):
    validate_cron_expression(expression)


@pytest.mark.parametrize("expression", ["", "* * * *", "* * * * * * *", "61 * * * *", "not a cron"])
def test_invalid_cron_expressions(expression):
    with pytest.raises(ValidationError):
        validate_cron_expression(expression)


async def hourly_report():
    return None


def test_next_fire_five_part():
    scheduler = CronScheduler()
    job = scheduler.add_job("0 * * * *", hourly_report)
    now = dt.datetime(2024, 1, 1, 10, 15, tzinfo=UTC)
    assert job.next_fire(now) == dt.datetime(2024, 1, 1, 11, 0, tzinfo=UTC)


def test_next_fire_six_part_has_seconds_first():
    scheduler = CronScheduler()
    job = scheduler.add_job("*/10 * * * * *", hourly_report, name="ticker")
    now = dt.datetime(2024, 1, 1, 10, 0, 3, tzinfo=UTC)
    assert job.next_fire(now) == dt.datetime(2024, 1, 1, 10, 0, 10, tzinfo=UTC)


def test_add_job_rules():
    scheduler = CronScheduler(timezone="utc")
    job = scheduler.add_job("0 * * * *", hourly_report)
    assert job.name.endswith("hourly_report")
    assert job.timezone == "utc"
    assert scheduler.jobs == [job]

    with pytest.raises(ValidationError):
        scheduler.add_job("0 * * * *", hourly_report)
    with pytest.raises(ValidationError):
        scheduler.add_job("0 * * * *", hourly_report, name="locked", lock=GuardOptions())
    with pytest.raises(ValidationError):
        scheduler.add_job("0 * * * *", hourly_report, name="elsewhere", timezone="Mars/Olympus")


def test_unknown_default_timezone():
    with pytest.raises(ValidationError):
        CronScheduler(timezone="Nowhere/Land")


@pytest.mark.asyncio
async def test_run_job_counts_failures():
    scheduler = CronScheduler()
    func = AsyncMock(side_effect=RuntimeError("report failed"))
    job = scheduler.add_job("0 * * * *", func, name="report")

    await scheduler.run_job(job)

    assert (job.runs, job.failures) == (1, 1)


@pytest.mark.asyncio
async def test_run_job_with_lock_goes_through_guard():
    guard = MagicMock(spec=LockGuard)
    guard.run = AsyncMock(return_value=None)
    scheduler = CronScheduler(guard=guard)
    options = GuardOptions(lock_timeout=5000)
    job = scheduler.add_job("0 * * * *", hourly_report, name="Reports_hourly", lock=options)

    await scheduler.run_job(job)

    guard.run.assert_awaited_once_with("Reports_hourly", "hourly_report", hourly_report, options)
    assert (job.runs, job.failures) == (1, 0)


@pytest.mark.asyncio
async def test_start_fires_jobs_until_stopped():
    scheduler = CronScheduler()
    fired = asyncio.Event()

    async def tick():
        fired.set()

    scheduler.add_job("* * * * * *", tick, name="tick")
    await scheduler.start()
    assert scheduler.running

    await asyncio.wait_for(fired.wait(), timeout=2.5)
    await scheduler.stop()

    assert not scheduler.running
    assert scheduler.jobs[0].runs >= 1


async def sync_region(region):
    return region


@pytest.mark.asyncio
async def test_partial_jobs_use_job_name_as_method():
    guard = MagicMock(spec=LockGuard)
    guard.run = AsyncMock(return_value=None)
    scheduler = CronScheduler(guard=guard)
    func = functools.partial(sync_region, "eu")

    unnamed = scheduler.add_job("0 * * * *", func)
    named = scheduler.add_job("0 * * * *", func, name="sync_eu", lock=GuardOptions())
    await scheduler.run_job(named)

    assert unnamed.name.startswith("partial_")
    guard.run.assert_awaited_once_with("sync_eu", "sync_eu", func, named.lock)
    assert named.failures == 0
