"""Topology-independent command surface over a redis.asyncio client."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Union

from redis.asyncio import Redis
from redis.asyncio.cluster import RedisCluster
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from redguard.core.errors import StoreConnectionError, ValidationError
from redguard.core.settings import StoreMode
from redguard.utils.logging import get_logger


logger = get_logger(__name__)

RawClient = Union[Redis, RedisCluster]


class StoreStatus(str, Enum):
    WAIT = "wait"
    READY = "ready"
    ERROR = "error"
    END = "end"


class StoreClientAdapter:
    """Wraps a standalone, sentinel-managed or cluster client behind one interface.

    Connection problems never escape the constructor: redis-py connects lazily
    and :meth:`connect` only records the outcome in :attr:`status`. Commands raise
    :class:`StoreConnectionError` once the client's own retry policy gives up.
    """

    def __init__(self, client: RawClient, *, mode: StoreMode = StoreMode.STANDALONE) -> None:
        self._client = client
        self._mode = mode
        self._status = StoreStatus.WAIT
        self.last_error: Optional[BaseException] = None

    @property
    def status(self) -> str:
        return self._status.value

    @property
    def mode(self) -> StoreMode:
        return self._mode

    def get_client(self) -> RawClient:
        """Underlying client handed to the quorum-lock client."""
        return self._client

    async def connect(self) -> str:
        """Contact the store once and record the outcome; never raises."""
        try:
            if self._mode is StoreMode.CLUSTER:
                await self._ping_cluster_nodes()
            else:
                await self._client.ping()
        except (RedisError, StoreConnectionError, OSError) as exc:
            self._mark_error(exc)
            logger.error("Redis %s client error: %s", self._mode.value, exc)
        else:
            self._status = StoreStatus.READY
            logger.info("Redis %s client connected successfully", self._mode.value)
        return self.status

    async def _ping_cluster_nodes(self) -> None:
        await self._client.initialize()
        reachable = 0
        for node in self._client.get_nodes():
            try:
                await self._client.ping(target_nodes=node)
            except RedisError as exc:
                logger.error("Redis cluster node error at %s: %s", node.name, exc)
                continue
            reachable += 1
        if not reachable:
            raise StoreConnectionError("No Redis cluster node is reachable")

    def _mark_error(self, exc: BaseException) -> None:
        self._status = StoreStatus.ERROR
        self.last_error = exc

    async def _run(self, command: str, call: Any) -> Any:
        try:
            result = await call
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self._mark_error(exc)
            raise StoreConnectionError(f"Redis command {command} failed: {exc}") from exc
        if self._status is not StoreStatus.END:
            self._status = StoreStatus.READY
        return result

    async def call(self, command: str, *args: Any) -> Any:
        return await self._run(command, self._client.execute_command(command, *args))

    async def set(
        self,
        key: str,
        value: Union[str, bytes],
        mode: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> Optional[str]:
        """SET with an optional ``EX`` (seconds) or ``PX`` (milliseconds) expiry."""
        kwargs: dict[str, int] = {}
        if mode and duration:
            expiry = mode.upper()
            if expiry == "EX":
                kwargs["ex"] = duration
            elif expiry == "PX":
                kwargs["px"] = duration
            else:
                raise ValidationError(f"Unsupported SET expiry mode: {mode}")
        result = await self._run("SET", self._client.set(key, value, **kwargs))
        return "OK" if result else None

    async def get(self, key: str) -> Any:
        return await self._run("GET", self._client.get(key))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._run("DEL", self._client.delete(*keys))

    async def exists(self, key: str) -> int:
        return await self._run("EXISTS", self._client.exists(key))

    async def eval(self, script: str, num_keys: int, *args: Any) -> Any:
        return await self._run("EVAL", self._client.eval(script, num_keys, *args))

    async def quit(self) -> str:
        """Close the connection gracefully."""
        await self._client.aclose()
        self._status = StoreStatus.END
        return "OK"

    async def disconnect(self) -> None:
        """Drop pooled connections immediately."""
        pool = getattr(self._client, "connection_pool", None)
        if pool is not None:
            await pool.disconnect()
        else:
            await self._client.aclose()
        self._status = StoreStatus.END
