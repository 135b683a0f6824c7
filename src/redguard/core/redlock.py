"""Redlock quorum lock over one or more independent Redis instances.

A lock is held when the same random value was written to every requested key on
a majority of instances within the lock's validity window. Keys are written and
removed with Lua scripts so that each instance applies the multi-key operation
atomically and never touches a key owned by a different value.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar, Union

from redis.asyncio import Redis
from redis.asyncio.cluster import RedisCluster
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, stop_never, wait_random

from redguard.core.errors import ConfigError, LockError, LockExtensionError, QuorumError, ValidationError
from redguard.utils.logging import get_logger


logger = get_logger(__name__)

T = TypeVar("T")
Client = Union[Redis, RedisCluster]

ACQUIRE_SCRIPT = """
for i, key in ipairs(KEYS) do
  if redis.call("exists", key) == 1 then
    return 0
  end
end
for i, key in ipairs(KEYS) do
  redis.call("set", key, ARGV[1], "PX", ARGV[2])
end
return #KEYS
"""

EXTEND_SCRIPT = """
for i, key in ipairs(KEYS) do
  if redis.call("get", key) ~= ARGV[1] then
    return 0
  end
end
for i, key in ipairs(KEYS) do
  redis.call("set", key, ARGV[1], "PX", ARGV[2])
end
return #KEYS
"""

RELEASE_SCRIPT = """
local count = 0
for i, key in ipairs(KEYS) do
  if redis.call("get", key) == ARGV[1] then
    redis.call("del", key)
    count = count + 1
  end
end
return count
"""


def _now_ms() -> float:
    return time.time() * 1000


def drift_ms(drift_factor: float, duration_ms: int) -> int:
    """Validity lost to clock drift for a lock of ``duration_ms``."""
    return round(drift_factor * duration_ms) + 2


class _NoQuorum(Exception):
    """One attempt failed to collect a majority of votes."""


@dataclass(slots=True)
class AttemptStats:
    """Votes collected from the instances during one attempt."""

    attempt: int
    votes_for: int = 0
    votes_against: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(slots=True, eq=False)
class LockHandle:
    """Proof of ownership for a set of keys.

    ``expiration`` is an epoch timestamp in milliseconds; it drops to 0 once the
    handle is released or superseded by an extension.
    """

    resources: Tuple[str, ...]
    value: str
    expiration: float
    attempts: List[AttemptStats] = field(default_factory=list)

    @property
    def remaining_ms(self) -> float:
        return max(0.0, self.expiration - _now_ms())

    def is_valid(self) -> bool:
        return self.expiration > _now_ms()


Vote = Callable[[int, int], bool]


def _all_keys(result: int, key_count: int) -> bool:
    return result == key_count


def _answered(result: int, key_count: int) -> bool:
    return True


class Redlock:
    """Quorum lock client.

    ``retry_count`` bounds the extra attempts after the first one; ``-1`` retries
    until the quorum is reached.
    """

    def __init__(
        self,
        clients: Sequence[Client],
        *,
        drift_factor: float = 0.01,
        retry_count: int = 3,
        retry_delay_ms: int = 200,
        retry_jitter_ms: int = 200,
        automatic_extension_threshold_ms: int = 500,
    ) -> None:
        if not clients:
            raise ConfigError("Redlock requires at least one Redis client")
        self._clients = list(clients)
        self.drift_factor = drift_factor
        self.retry_count = retry_count
        self.retry_delay_ms = retry_delay_ms
        self.retry_jitter_ms = retry_jitter_ms
        self.automatic_extension_threshold_ms = automatic_extension_threshold_ms

    @property
    def quorum(self) -> int:
        return len(self._clients) // 2 + 1

    def _drift_ms(self, duration_ms: int) -> float:
        return drift_ms(self.drift_factor, duration_ms)

    def _retrying(self) -> AsyncRetrying:
        """Attempt policy: ``retry_count + 1`` tries spaced by ``retry_delay_ms ± retry_jitter_ms``."""
        low = max(0, self.retry_delay_ms - self.retry_jitter_ms) / 1000
        high = (self.retry_delay_ms + self.retry_jitter_ms) / 1000
        return AsyncRetrying(
            stop=stop_never if self.retry_count == -1 else stop_after_attempt(self.retry_count + 1),
            wait=wait_random(low, high),
            retry=retry_if_exception_type(_NoQuorum),
            reraise=True,
        )

    async def acquire(self, resources: Sequence[str], duration_ms: int) -> LockHandle:
        keys = _check_request(resources, duration_ms)
        value = secrets.token_hex(16)
        args = (value, int(duration_ms))
        attempts: List[AttemptStats] = []
        try:
            async for retry_state in self._retrying():
                with retry_state:
                    start = _now_ms()
                    stats = await self._attempt(len(attempts) + 1, ACQUIRE_SCRIPT, keys, args, _all_keys)
                    attempts.append(stats)
                    expiration = start + duration_ms - self._drift_ms(duration_ms)
                    if stats.votes_for >= self.quorum and expiration > _now_ms():
                        return LockHandle(resources=keys, value=value, expiration=expiration, attempts=attempts)
                    if stats.votes_for:
                        # drop the minority of keys we managed to set
                        await self._attempt(0, RELEASE_SCRIPT, keys, (value,), _answered)
                    raise _NoQuorum()
        except _NoQuorum:
            raise QuorumError(_quorum_message("acquire", keys, attempts), attempts) from None
        raise AssertionError("retry policy ended without an outcome")

    async def extend(self, handle: LockHandle, duration_ms: int) -> LockHandle:
        """Re-assert ``handle`` for ``duration_ms``; the old handle is superseded."""
        keys = _check_request(handle.resources, duration_ms)
        if not handle.is_valid():
            raise LockExtensionError("Cannot extend an already-expired lock")
        start, attempts = await self._execute(EXTEND_SCRIPT, keys, (handle.value, int(duration_ms)), _all_keys, "extend")
        extended = LockHandle(
            resources=keys,
            value=handle.value,
            expiration=start + duration_ms - self._drift_ms(duration_ms),
            attempts=attempts,
        )
        handle.expiration = 0
        return extended

    async def release(self, handle: LockHandle) -> List[AttemptStats]:
        handle.expiration = 0
        _, attempts = await self._execute(RELEASE_SCRIPT, handle.resources, (handle.value,), _answered, "release")
        return attempts

    async def using(
        self,
        resources: Sequence[str],
        duration_ms: int,
        routine: Callable[[], Awaitable[T]],
    ) -> T:
        """Run ``routine`` under the lock, extending it automatically until it finishes."""
        if self.automatic_extension_threshold_ms >= duration_ms:
            raise ValidationError("Lock duration must exceed the automatic extension threshold")
        current = [await self.acquire(resources, duration_ms)]

        async def _keep_alive() -> None:
            while True:
                wait_ms = current[0].expiration - _now_ms() - self.automatic_extension_threshold_ms
                await asyncio.sleep(max(wait_ms, 0) / 1000)
                current[0] = await self.extend(current[0], duration_ms)

        keeper = asyncio.create_task(_keep_alive())
        work = asyncio.ensure_future(routine())
        try:
            await asyncio.wait({keeper, work}, return_when=asyncio.FIRST_COMPLETED)
            if not work.done():
                raise LockExtensionError(
                    f"Automatic extension failed for {', '.join(current[0].resources)}"
                ) from keeper.exception()
            return work.result()
        finally:
            for task in (keeper, work):
                if not task.done():
                    task.cancel()
            await asyncio.gather(keeper, work, return_exceptions=True)
            try:
                await self.release(current[0])
            except LockError as exc:
                logger.warning("Failed to release lock %s: %s", ", ".join(current[0].resources), exc)

    async def _execute(
        self,
        script: str,
        keys: Tuple[str, ...],
        args: Tuple[object, ...],
        vote: Vote,
        action: str,
    ) -> Tuple[float, List[AttemptStats]]:
        attempts: List[AttemptStats] = []
        try:
            async for retry_state in self._retrying():
                with retry_state:
                    start = _now_ms()
                    stats = await self._attempt(len(attempts) + 1, script, keys, args, vote)
                    attempts.append(stats)
                    if stats.votes_for >= self.quorum:
                        return start, attempts
                    raise _NoQuorum()
        except _NoQuorum:
            raise QuorumError(_quorum_message(action, keys, attempts), attempts) from None
        raise AssertionError("retry policy ended without an outcome")


    async def _attempt(
        self,
        number: int,
        script: str,
        keys: Tuple[str, ...],
        args: Tuple[object, ...],
        vote: Vote,
    ) -> AttemptStats:
        results = await asyncio.gather(*(self._run_script(client, script, keys, args) for client in self._clients))
        stats = AttemptStats(attempt=number)
        for result in results:
            if isinstance(result, RedisError):
                stats.votes_against += 1
                stats.errors.append(str(result))
            elif vote(result, len(keys)):
                stats.votes_for += 1
            else:
                stats.votes_against += 1
        return stats

    async def _run_script(
        self,
        client: Client,
        script: str,
        keys: Tuple[str, ...],
        args: Tuple[object, ...],
    ) -> Union[int, RedisError]:
        try:
            return int(await client.eval(script, len(keys), *keys, *args))
        except RedisError as exc:
            logger.error("Redis client error in Redlock: %s", exc)
            return exc


def _check_request(resources: Sequence[str], duration_ms: int) -> Tuple[str, ...]:
    keys = tuple(resources)
    if not keys:
        raise ValidationError("Resources array cannot be empty")
    if duration_ms <= 0:
        raise ValidationError("Lock duration must be positive")
    return keys


def _quorum_message(action: str, keys: Tuple[str, ...], attempts: List[AttemptStats]) -> str:
    last: Optional[AttemptStats] = attempts[-1] if attempts else None
    detail = ""
    if last is not None:
        detail = f" (last attempt: {last.votes_for} for, {last.votes_against} against"
        if last.errors:
            detail += f", errors: {'; '.join(last.errors)}"
        detail += ")"
    return f"Unable to {action} lock on {', '.join(keys)} after {len(attempts)} attempts{detail}"
