"""Store connection adapter and client factory."""

from .adapter import StoreClientAdapter, StoreStatus
from .factory import LinearCappedBackoff, StoreClientFactory

__all__ = [
    "LinearCappedBackoff",
    "StoreClientAdapter",
    "StoreClientFactory",
    "StoreStatus",
]
