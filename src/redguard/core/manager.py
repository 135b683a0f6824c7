"""Process-wide lock manager owning the store connection and the quorum client."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Optional, Sequence, Union

from redguard.core.errors import (
    ConfigError,
    LockAcquisitionError,
    LockError,
    LockExtensionError,
    LockReleaseError,
    ValidationError,
)
from redguard.core.redlock import LockHandle, Redlock
from redguard.core.settings import LockSettings, StoreConfig
from redguard.store.adapter import StoreClientAdapter, StoreStatus
from redguard.store.factory import StoreClientFactory
from redguard.utils.logging import get_logger


logger = get_logger(__name__)


class _Superseded(Exception):
    """An initialization outlived the epoch it was started in."""

    def __init__(self, closed: bool) -> None:
        super().__init__("initialization superseded")
        self.closed = closed


ClientFactory = Callable[[StoreConfig], StoreClientAdapter]
SettingsInput = Union[LockSettings, Mapping[str, Any], None]


class LockManager:
    """Owns one store adapter and one :class:`Redlock` built over it.

    Construct it once at process start and hand it to every consumer, or use
    :meth:`get_instance` for a process-wide default. Initialization is lazy and
    single-flight: concurrent callers share one in-flight initialization.
    """

    _instance: ClassVar[Optional["LockManager"]] = None

    def __init__(
        self,
        settings: SettingsInput = None,
        *,
        client_factory: ClientFactory = StoreClientFactory.create_client,
        adapter: Optional[StoreClientAdapter] = None,
    ) -> None:
        self._settings = LockSettings.parse(settings)
        self._client_factory = client_factory
        self._adapter: Optional[StoreClientAdapter] = adapter
        self._retired: List[StoreClientAdapter] = []
        self._redlock: Optional[Redlock] = None
        self._initialized = False
        self._init_task: Optional[asyncio.Future[None]] = None
        # bumped by update_config() and close(); stale initializations are discarded
        self._epoch = 0
        self._closed_epoch = 0

    @classmethod
    def get_instance(cls, settings: SettingsInput = None, **kwargs: Any) -> "LockManager":
        """Return the process-wide manager, creating it on first use.

        ``settings`` only apply when the instance is created; later values are
        ignored with a warning, use :meth:`update_config` instead.
        """
        if cls._instance is None:
            cls._instance = cls(settings, **kwargs)
            logger.debug("Created new LockManager singleton instance")
        elif settings is not None or kwargs:
            logger.warning(
                "LockManager instance already exists, ignoring new options. "
                "Use update_config() to change configuration."
            )
        return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Close and forget the process-wide manager."""
        instance, cls._instance = cls._instance, None
        if instance is not None:
            await instance.close()

    @property
    def settings(self) -> LockSettings:
        return self._settings

    def get_config(self) -> LockSettings:
        return self._settings.model_copy(deep=True)

    def is_ready(self) -> bool:
        return (
            self._initialized
            and self._redlock is not None
            and self._adapter is not None
            and self._adapter.status not in (StoreStatus.ERROR.value, StoreStatus.END.value)
        )

    async def initialize(self) -> None:
        while not self._initialized:
            if self._init_task is None:
                self._init_task = asyncio.ensure_future(self._perform_initialization(self._epoch))
            task = self._init_task
            try:
                # shield: a cancelled caller must not cancel the shared initialization
                await asyncio.shield(task)
            except _Superseded as exc:
                if exc.closed:
                    raise LockError("LockManager was closed during initialization") from None
                logger.debug("LockManager configuration changed during initialization, retrying")
            except BaseException:
                if task.done() and self._init_task is task:
                    self._init_task = None
                    self._initialized = False
                    self._redlock = None
                    logger.warning("LockManager initialization failed, state has been reset for retry")
                raise

    async def _perform_initialization(self, epoch: int) -> None:
        await self._close_retired()
        adapter = self._adapter
        created = False
        try:
            store = StoreClientFactory.validate_config(self._settings.store)
            if adapter is None:
                adapter = self._client_factory(store)
                created = True
                logger.debug("Created new Redis connection for LockManager")
            await adapter.connect()
            redlock = Redlock(
                [adapter.get_client()],
                drift_factor=self._settings.clock_drift_factor,
                retry_count=self._settings.max_retries,
                retry_delay_ms=self._settings.retry_delay_ms,
                retry_jitter_ms=self._settings.retry_jitter_ms,
                automatic_extension_threshold_ms=self._settings.extension_threshold_ms,
            )
        except ConfigError:
            logger.error("Failed to initialize LockManager: invalid store configuration")
            raise
        except Exception as exc:
            if created and epoch == self._epoch:
                # reused by the next attempt
                self._adapter = adapter
            logger.error("Failed to initialize LockManager: %s", exc)
            raise LockError(f"LockManager initialization failed: {exc}") from exc

        if epoch != self._epoch:
            # close() or update_config() ran while we were connecting
            if adapter is not self._adapter:
                await self._close_adapter(adapter)
            raise _Superseded(closed=self._closed_epoch > epoch)

        self._adapter = adapter
        self._redlock = redlock
        self._initialized = True
        logger.info("LockManager initialized successfully")

    def _prefixed(self, resources: Sequence[str]) -> List[str]:
        return [f"{self._settings.key_prefix}{resource}" for resource in resources]

    async def acquire(self, resources: Sequence[str], ttl: Optional[int] = None) -> LockHandle:
        if isinstance(resources, str) or not resources:
            raise ValidationError("Resources array cannot be empty")
        lock_ttl = self._settings.lock_timeout if ttl is None else ttl
        if lock_ttl <= 0:
            raise ValidationError("Lock TTL must be positive")

        await self.initialize()
        keys = self._prefixed(resources)
        redlock = self._redlock
        if redlock is None:
            raise LockAcquisitionError("Lock acquisition failed: LockManager was closed", resources=keys)

        logger.debug("Acquiring lock for resources: %s with TTL: %sms", ", ".join(keys), lock_ttl)
        try:
            handle = await redlock.acquire(keys, lock_ttl)
        except LockError as exc:
            logger.error("Failed to acquire lock for resources: %s", ", ".join(resources))
            raise LockAcquisitionError(f"Lock acquisition failed: {exc}", resources=keys) from exc
        logger.debug("Lock acquired successfully for resources: %s", ", ".join(keys))
        return handle

    async def _ready_redlock(self, error: type[LockError], action: str) -> Redlock:
        # handles outlive update_config(), so re-initialize instead of refusing them
        try:
            await self.initialize()
        except LockError as exc:
            raise error(f"Lock {action} failed: {exc}") from exc
        if self._redlock is None:
            raise error(f"Lock {action} failed: LockManager was closed")
        return self._redlock

    async def release(self, handle: Optional[LockHandle]) -> None:
        if handle is None:
            raise ValidationError("Lock handle is required")
        redlock = await self._ready_redlock(LockReleaseError, "release")
        try:
            await redlock.release(handle)
        except LockError as exc:
            logger.error("Failed to release lock %s: %s", ", ".join(handle.resources), exc)
            raise LockReleaseError(f"Lock release failed: {exc}") from exc
        logger.debug("Lock released successfully")

    async def extend(self, handle: Optional[LockHandle], ttl: int) -> LockHandle:
        """Extend ``handle`` by ``ttl`` ms and return the new handle; discard the old one."""
        if handle is None:
            raise ValidationError("Lock handle is required")
        if ttl <= 0:
            raise ValidationError("TTL must be positive")
        redlock = await self._ready_redlock(LockExtensionError, "extension")
        try:
            extended = await redlock.extend(handle, ttl)
        except LockError as exc:
            logger.error("Failed to extend lock %s: %s", ", ".join(handle.resources), exc)
            raise LockExtensionError(f"Lock extension failed: {exc}") from exc
        logger.debug("Lock extended successfully with TTL: %sms", ttl)
        return extended

    def update_config(self, overrides: Optional[Mapping[str, Any]] = None) -> None:
        """Apply new settings; the next use re-initializes the quorum client."""
        if overrides:
            previous = self._settings
            self._settings = previous.merged(overrides)
            if self._adapter is not None and self._settings.store != previous.store:
                # closed on the next initialization
                self._retired.append(self._adapter)
                self._adapter = None
        self._epoch += 1
        self._initialized = False
        self._init_task = None
        self._redlock = None
        logger.debug("LockManager configuration updated, will reinitialize on next use")

    async def close(self) -> None:
        self._epoch += 1
        self._closed_epoch = self._epoch
        if self._adapter is not None:
            self._retired.append(self._adapter)
        self._adapter = None
        self._redlock = None
        self._initialized = False
        self._init_task = None
        await self._close_retired()

    async def _close_retired(self) -> None:
        retired, self._retired = self._retired, []
        for adapter in retired:
            await self._close_adapter(adapter)

    @staticmethod
    async def _close_adapter(adapter: StoreClientAdapter) -> None:
        try:
            if adapter.status == StoreStatus.READY.value:
                await adapter.quit()
                logger.debug("Redis connection closed")
        except Exception as exc:
            logger.error("Error closing Redis connection: %s", exc)

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.initialize()
            if self._adapter is not None:
                await self._adapter.connect()
        except Exception as exc:
            return {
                "status": "unhealthy",
                "details": {"error": str(exc), "initialized": self._initialized},
            }
        ready = self.is_ready()
        return {
            "status": "healthy" if ready else "unhealthy",
            "details": {
                "initialized": self._initialized,
                "redis_status": self._adapter.status if self._adapter else "unknown",
                "redis_mode": self._settings.store.mode,
                "redlock_ready": self._redlock is not None,
            },
        }
