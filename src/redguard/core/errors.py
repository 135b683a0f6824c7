"""Exception hierarchy for distributed locking."""

from __future__ import annotations

from typing import Any, List, Optional, Sequence


class LockError(Exception):
    """Base exception for every lock related failure."""


class ValidationError(LockError, ValueError):
    """Invalid caller input, raised before any store round-trip."""


class ConfigError(LockError, ValueError):
    """Malformed store topology or lock settings."""


class StoreConnectionError(LockError, ConnectionError):
    """The key-value store could not be reached."""


class QuorumError(LockError):
    """The quorum client could not reach a majority of store instances."""

    def __init__(self, message: str, attempts: Optional[Sequence[Any]] = None) -> None:
        super().__init__(message)
        self.attempts: List[Any] = list(attempts or [])


class LockAcquisitionError(LockError):
    """A lock could not be acquired (contention or quorum not reached)."""

    def __init__(self, message: str, resources: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.resources = list(resources or [])


class LockExtensionError(LockError):
    """An existing lock could not be extended."""


class LockReleaseError(LockError):
    """An existing lock could not be released."""


class TimeoutExceededError(LockError, TimeoutError):
    """A guarded method kept overrunning its deadline after the allowed extensions."""

    def __init__(self, method: str, extensions: int) -> None:
        super().__init__(f"Method {method} execution timeout after {extensions} lock extensions")
        self.method = method
        self.extensions = extensions


class DeadlineExceeded(Exception):
    """Timeout signal: a guarded attempt outlived its lock deadline.

    Raised internally by the deadline race; guarded operations may raise it
    themselves to request a lock extension and a fresh attempt.
    """
