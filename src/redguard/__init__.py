"""Redis-backed distributed locks with guarded execution."""

from .core.errors import (
    ConfigError,
    DeadlineExceeded,
    LockAcquisitionError,
    LockError,
    LockExtensionError,
    LockReleaseError,
    QuorumError,
    StoreConnectionError,
    TimeoutExceededError,
    ValidationError,
)
from .core.guard import GuardOptions, LockGuard, generate_lock_name, guarded
from .core.manager import LockManager
from .core.redlock import LockHandle, Redlock
from .core.scheduler import CronScheduler, validate_cron_expression
from .core.settings import (
    ClusterStoreConfig,
    LockSettings,
    RedguardSettings,
    SentinelStoreConfig,
    StandaloneStoreConfig,
    StoreMode,
)
from .store import StoreClientAdapter, StoreClientFactory

__all__ = [
    "__version__",
    "ClusterStoreConfig",
    "ConfigError",
    "CronScheduler",
    "DeadlineExceeded",
    "GuardOptions",
    "LockAcquisitionError",
    "LockError",
    "LockExtensionError",
    "LockGuard",
    "LockHandle",
    "LockManager",
    "LockReleaseError",
    "LockSettings",
    "QuorumError",
    "RedguardSettings",
    "Redlock",
    "SentinelStoreConfig",
    "StandaloneStoreConfig",
    "StoreClientAdapter",
    "StoreClientFactory",
    "StoreConnectionError",
    "StoreMode",
    "TimeoutExceededError",
    "ValidationError",
    "generate_lock_name",
    "guarded",
    "validate_cron_expression",
]

__version__ = "0.1.0"
