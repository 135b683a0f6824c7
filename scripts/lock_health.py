"""CLI entrypoint to check the lock store and optionally take a test lock."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from redguard.core.errors import LockError
from redguard.core.manager import LockManager
from redguard.core.settings import RedguardSettings
from redguard.utils.logging import get_logger


logger = get_logger("LockHealthCLI")


def _load_settings(path: Path | None) -> RedguardSettings:
    if path is None:
        logger.info("No config file given; reading REDGUARD_* / REDIS_* environment variables.")
        return RedguardSettings.from_env()
    return RedguardSettings.from_file(path)


async def main() -> int:
    parser = argparse.ArgumentParser(description="Report distributed lock store health.")
    parser.add_argument("--config", type=Path, default=None, help="Path to redguard YAML")
    parser.add_argument("--try-lock", metavar="RESOURCE", help="Acquire and release a lock on RESOURCE")
    parser.add_argument("--ttl", type=int, default=2000, help="TTL in ms for --try-lock")
    args = parser.parse_args()

    settings = _load_settings(args.config)
    manager = LockManager(settings.lock)
    try:
        report = await manager.health_check()
        if args.try_lock and report["status"] == "healthy":
            try:
                handle = await manager.acquire([args.try_lock], args.ttl)
                await manager.release(handle)
                report["lock_check"] = {"resource": args.try_lock, "acquired": True}
            except LockError as exc:
                report["lock_check"] = {"resource": args.try_lock, "acquired": False, "error": str(exc)}
        print(json.dumps(report, indent=2))
        return 0 if report["status"] == "healthy" else 1
    finally:
        await manager.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
