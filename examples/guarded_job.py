"""Example: a nightly sync that only one worker runs at a time."""

from __future__ import annotations

import asyncio
import random

from redguard import CronScheduler, GuardOptions, LockGuard, LockManager, guarded
from redguard.core.settings import RedguardSettings
from redguard.utils.logging import get_logger


logger = get_logger("GuardedJobExample")


async def main() -> None:
    settings = RedguardSettings.from_env()
    manager = LockManager.get_instance(settings.lock)
    guard = LockGuard(manager)

    class InventorySync:
        @guarded(guard, options=GuardOptions(lock_timeout=5000))
        async def run(self) -> int:
            # pretend to pull a page of changes
            await asyncio.sleep(random.uniform(0.1, 0.5))
            changed = random.randint(0, 25)
            logger.info("Synced %d inventory rows", changed)
            return changed

    sync = InventorySync()
    logger.info("Lock name for InventorySync.run: %s", InventorySync.run.lock_name)
    await sync.run()

    scheduler = CronScheduler(guard=guard, timezone=settings.schedule.timezone)
    scheduler.add_job("*/5 * * * * *", sync.run, name="inventory_sync")
    await scheduler.start()
    try:
        await asyncio.sleep(12)
    finally:
        await scheduler.stop()
        await LockManager.reset_instance()


if __name__ == "__main__":
    asyncio.run(main())
