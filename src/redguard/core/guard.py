"""Run work while holding a distributed lock, extending it when the work overruns.

Each attempt races the operation against a deadline of ``SAFETY_MARGIN_MS`` before
the lock stops being valid: ``ttl`` or, when clock drift makes it shorter, the
handle's own validity window.
When the deadline fires (or the operation raises :class:`DeadlineExceeded`) the
lock is extended and the operation is attempted again, at most
``MAX_EXTENSIONS`` times. Any other outcome ends the execution, and the lock is
released on every exit path.

Timed-out attempts are not cancelled. With ``reinvoke_on_timeout`` (the default)
a fresh attempt starts while the previous one keeps running detached and its
result is discarded, so operations guarded this way must be safe to run again.
Set ``reinvoke_on_timeout=False`` to keep awaiting the same attempt instead.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar

from redguard.core.errors import (
    DeadlineExceeded,
    LockError,
    LockExtensionError,
    TimeoutExceededError,
    ValidationError,
)
from redguard.core.manager import LockManager
from redguard.core.redlock import LockHandle, drift_ms
from redguard.utils.logging import get_logger


logger = get_logger(__name__)

T = TypeVar("T")

SAFETY_MARGIN_MS = 200
MAX_EXTENSIONS = 3


@dataclass(slots=True)
class GuardOptions:
    """Per-method lock options; unset values fall back to the manager settings."""

    lock_timeout: Optional[int] = None
    reinvoke_on_timeout: bool = True

    def effective_timeout(self, manager: LockManager) -> int:
        if self.lock_timeout is None:
            return manager.settings.lock_timeout
        return self.lock_timeout


async def _invoke(operation: Callable[[], Any]) -> Any:
    result = operation()
    if inspect.isawaitable(result):
        return await result
    return result


class LockGuard:
    """Guarded execution on top of a :class:`LockManager`."""

    def __init__(self, manager: LockManager) -> None:
        self.manager = manager
        self._detached: Set["asyncio.Task[Any]"] = set()

    async def run(
        self,
        name: str,
        method: str,
        operation: Callable[[], Awaitable[T]],
        options: Optional[GuardOptions] = None,
    ) -> T:
        """Acquire ``[method, name]``, run ``operation`` and release the lock."""
        options = options or GuardOptions()
        if operation is None or not callable(operation):
            raise ValidationError("Guarded operation must be callable")
        if not name or not isinstance(name, str):
            raise ValidationError("Lock name must be a non-empty string")
        if not method or not isinstance(method, str):
            raise ValidationError("Method name must be a non-empty string")
        ttl = options.effective_timeout(self.manager)
        if ttl <= SAFETY_MARGIN_MS:
            raise ValidationError(
                f"Lock timeout must be greater than {SAFETY_MARGIN_MS}ms to allow for proper execution"
            )
        validity = ttl - drift_ms(self.manager.settings.clock_drift_factor, ttl)
        if validity <= SAFETY_MARGIN_MS:
            raise ValidationError(
                f"Lock timeout {ttl}ms leaves {validity}ms of validity after clock drift, "
                f"which must exceed the {SAFETY_MARGIN_MS}ms safety margin"
            )

        handle = await self.manager.acquire([method, name], ttl)
        logger.debug("Lock acquired for method: %s, timeout: %sms", method, ttl - SAFETY_MARGIN_MS)
        execution = _Execution(self, method, handle, ttl, options.reinvoke_on_timeout)
        try:
            return await execution.run(operation)
        finally:
            await self._release(execution.handle, method)

    async def _release(self, handle: LockHandle, method: str) -> None:
        try:
            await self.manager.release(handle)
            logger.debug("Lock released for method: %s", method)
        except LockError as exc:
            logger.warning("Failed to release lock for method: %s: %s", method, exc)

    def _detach(self, task: "asyncio.Task[Any]", method: str) -> None:
        self._detached.add(task)

        def _finished(done: "asyncio.Task[Any]") -> None:
            self._detached.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                logger.debug("Detached attempt of %s finished with %r", method, exc)

        task.add_done_callback(_finished)

    @property
    def detached_attempts(self) -> int:
        """Timed-out attempts still running in the background."""
        return len(self._detached)


class _Execution:
    def __init__(self, guard: LockGuard, method: str, handle: LockHandle, ttl: int, reinvoke: bool) -> None:
        self.guard = guard
        self.method = method
        self.handle = handle
        self.ttl = ttl
        self.reinvoke = reinvoke
        self.extensions = 0

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt: Optional["asyncio.Task[T]"] = None
        try:
            while True:
                if attempt is None or attempt.done():
                    attempt = asyncio.ensure_future(_invoke(operation))
                done, _ = await asyncio.wait({attempt}, timeout=self._deadline_s())
                if attempt in done:
                    try:
                        return attempt.result()
                    except DeadlineExceeded:
                        pass
                elif self.reinvoke:
                    self.guard._detach(attempt, self.method)
                    attempt = None

                if self.extensions >= MAX_EXTENSIONS:
                    raise TimeoutExceededError(self.method, self.extensions)
                await self._extend()
        except asyncio.CancelledError:
            if attempt is not None and not attempt.done():
                attempt.cancel()
            raise
        except BaseException:
            if attempt is not None and not attempt.done():
                self.guard._detach(attempt, self.method)
            raise

    def _deadline_s(self) -> float:
        # the handle's drift-adjusted validity can end before ttl does
        budget_ms = min(self.ttl, self.handle.remaining_ms) - SAFETY_MARGIN_MS
        return max(budget_ms, 0) / 1000

    async def _extend(self) -> None:
        self.extensions += 1
        logger.debug(
            "Method %s execution timeout, attempting lock extension %d/%d",
            self.method,
            self.extensions,
            MAX_EXTENSIONS,
        )
        try:
            self.handle = await self.guard.manager.extend(self.handle, self.ttl)
        except LockError as exc:
            logger.error("Failed to extend lock for method: %s", self.method)
            raise LockExtensionError(f"Lock extension failed for method {self.method}: {exc}") from exc
        logger.debug("Lock extended for method: %s, remaining time: %dms", self.method, self._deadline_s() * 1000)


def generate_lock_name(name: Optional[str], func: Callable[..., Any]) -> str:
    """Lock name for ``func``: explicit name, ``Class_method``, ``module_function`` or a random suffix."""
    if name:
        return name
    method = getattr(func, "__name__", None)
    if method is None:
        # partials and callable objects carry no identity of their own
        return f"{type(func).__name__}_{uuid.uuid4().hex[:12]}"
    parts = getattr(func, "__qualname__", method).split(".")
    owner = parts[-2] if len(parts) > 1 else ""
    if owner and not owner.startswith("<"):
        return f"{owner}_{method}"
    module = getattr(func, "__module__", None)
    if len(parts) == 1 and module and not method.startswith("<"):
        return f"{module.replace('.', '_')}_{method}"
    return f"{method.strip('<>')}_{uuid.uuid4().hex[:12]}"


def guarded(
    guard: LockGuard,
    name: Optional[str] = None,
    options: Optional[GuardOptions] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async function or method so every call runs under the lock."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        if not callable(func):
            raise ValidationError("@guarded can only be applied to callables")
        lock_name = generate_lock_name(name, func)
        method = getattr(func, "__name__", lock_name)

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await guard.run(lock_name, method, lambda: func(*args, **kwargs), options)

        wrapper.lock_name = lock_name  # type: ignore[attr-defined]
        return wrapper

    return decorator
