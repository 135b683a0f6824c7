"""Builds store adapters for standalone, sentinel and cluster topologies."""

from __future__ import annotations

from typing import Any, Dict

from redis.asyncio import Redis
from redis.asyncio.cluster import ClusterNode, RedisCluster
from redis.asyncio.retry import Retry
from redis.asyncio.sentinel import Sentinel
from redis.backoff import AbstractBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from redguard.core.errors import ConfigError
from redguard.core.settings import (
    ClusterStoreConfig,
    SentinelStoreConfig,
    StandaloneStoreConfig,
    StoreConfig,
    StoreMode,
    parse_store_config,
)
from redguard.store.adapter import StoreClientAdapter
from redguard.utils.logging import get_logger


logger = get_logger(__name__)


class LinearCappedBackoff(AbstractBackoff):
    """Reconnect delay of ``min(failures * step, cap)`` seconds."""

    def __init__(self, step: float = 0.05, cap: float = 2.0) -> None:
        self._step = step
        self._cap = cap

    def compute(self, failures: int) -> float:
        delay = min(failures * self._step, self._cap)
        logger.debug("Redis reconnecting, attempt %d, delay %dms", failures, int(delay * 1000))
        return delay


def _retry_policy(config: StoreConfig) -> Retry:
    return Retry(LinearCappedBackoff(), config.max_retries_per_request)


def _common_kwargs(config: StoreConfig) -> Dict[str, Any]:
    return {
        "password": config.password or None,
        "username": config.username or None,
        "socket_connect_timeout": config.connect_timeout_ms / 1000,
        "socket_timeout": config.command_timeout_ms / 1000,
        "retry": _retry_policy(config),
        "retry_on_error": [RedisConnectionError, RedisTimeoutError],
    }


class StoreClientFactory:
    """Validates a store configuration and creates the matching adapter."""

    @classmethod
    def create_client(cls, config: Any) -> StoreClientAdapter:
        config = cls.validate_config(config)
        logger.debug("Creating Redis client in %s mode", config.mode)
        if isinstance(config, StandaloneStoreConfig):
            return cls._create_standalone_client(config)
        if isinstance(config, SentinelStoreConfig):
            return cls._create_sentinel_client(config)
        if isinstance(config, ClusterStoreConfig):
            return cls._create_cluster_client(config)
        raise ConfigError(f"Unsupported store mode: {getattr(config, 'mode', None)}")

    @staticmethod
    def _create_standalone_client(config: StandaloneStoreConfig) -> StoreClientAdapter:
        logger.debug("Creating standalone Redis client: %s:%s", config.host, config.port)
        client = Redis(host=config.host, port=config.port, db=config.db, **_common_kwargs(config))
        return StoreClientAdapter(client, mode=StoreMode.STANDALONE)

    @staticmethod
    def _create_sentinel_client(config: SentinelStoreConfig) -> StoreClientAdapter:
        logger.debug("Creating sentinel Redis client for master: %s", config.name)
        sentinel = Sentinel(
            [(node.host, node.port) for node in config.sentinels],
            sentinel_kwargs={
                "password": config.sentinel_password or None,
                "socket_connect_timeout": config.connect_timeout_ms / 1000,
                "socket_timeout": config.command_timeout_ms / 1000,
                "retry": _retry_policy(config),
            },
            db=config.db,
            **_common_kwargs(config),
        )
        client = sentinel.master_for(config.name)
        return StoreClientAdapter(client, mode=StoreMode.SENTINEL)

    @staticmethod
    def _create_cluster_client(config: ClusterStoreConfig) -> StoreClientAdapter:
        logger.debug("Creating cluster Redis client with %d nodes", len(config.nodes))
        client = RedisCluster(
            startup_nodes=[ClusterNode(node.host, node.port) for node in config.nodes],
            **_common_kwargs(config),
        )
        return StoreClientAdapter(client, mode=StoreMode.CLUSTER)

    @classmethod
    def validate_config(cls, config: Any) -> StoreConfig:
        """Check the mandatory fields of the configured topology.

        Returns the typed config so callers can pass plain mappings.
        """
        if config is None:
            raise ConfigError("Redis configuration cannot be empty")
        config = parse_store_config(config)
        if isinstance(config, StandaloneStoreConfig):
            if not config.host:
                raise ConfigError("Standalone mode requires host configuration")
            if not config.port:
                raise ConfigError("Standalone mode requires port configuration")
        elif isinstance(config, SentinelStoreConfig):
            if not config.sentinels:
                raise ConfigError("Sentinel mode requires at least one sentinel node")
            if not config.name:
                raise ConfigError("Sentinel mode requires master name")
        elif isinstance(config, ClusterStoreConfig):
            if not config.nodes:
                raise ConfigError("Cluster mode requires at least one node")
        else:
            raise ConfigError(f"Unsupported store mode: {getattr(config, 'mode', None)}")
        return config
