from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from redguard.core.errors import ConfigError, StoreConnectionError, ValidationError
from redguard.core.settings import SentinelStoreConfig, StandaloneStoreConfig, StoreMode
from redguard.store import factory as factory_module
from redguard.store.adapter import StoreClientAdapter, StoreStatus
from redguard.store.factory import LinearCappedBackoff, StoreClientFactory


@pytest.mark.parametrize(
    "config, message",
    [
        (None, "cannot be empty"),
        ({"mode": "standalone", "port": 6379}, "requires host"),
        ({"mode": "standalone", "host": "localhost"}, "requires port"),
        ({"mode": "sentinel", "sentinels": [], "name": "mymaster"}, "at least one sentinel"),
        ({"mode": "sentinel", "sentinels": [{"host": "s1"}]}, "requires master name"),
        ({"mode": "cluster", "nodes": []}, "at least one node"),
        ({"host": "localhost", "port": 6379}, "requires a 'mode'"),
        ({"mode": "replica"}, "Unsupported store mode"),
    ],
)
def test_validate_config_rejects(config, message):
    with pytest.raises(ConfigError, match=message):
        StoreClientFactory.validate_config(config)


def test_validate_config_returns_typed_config():
    config = StoreClientFactory.validate_config({"mode": "standalone", "host": "localhost", "port": 6380})
    assert isinstance(config, StandaloneStoreConfig)
    assert config.port == 6380


def test_create_standalone_client_is_lazy():
    adapter = StoreClientFactory.create_client(StandaloneStoreConfig(host="localhost", port=6379))
    assert adapter.mode is StoreMode.STANDALONE
    assert adapter.status == StoreStatus.WAIT.value
    kwargs = adapter.get_client().connection_pool.connection_kwargs
    assert kwargs["host"] == "localhost"
    assert kwargs["socket_timeout"] == 5.0


def test_create_sentinel_client(monkeypatch):
    sentinel_cls = MagicMock()
    monkeypatch.setattr(factory_module, "Sentinel", sentinel_cls)
    config = SentinelStoreConfig(
        sentinels=[{"host": "s1", "port": 26379}, {"host": "s2", "port": 26380}],
        name="mymaster",
        sentinel_password="secret",
    )

    adapter = StoreClientFactory.create_client(config)

    args, kwargs = sentinel_cls.call_args
    assert args[0] == [("s1", 26379), ("s2", 26380)]
    assert kwargs["sentinel_kwargs"]["password"] == "secret"
    sentinel_cls.return_value.master_for.assert_called_once_with("mymaster")
    assert adapter.get_client() is sentinel_cls.return_value.master_for.return_value
    assert adapter.mode is StoreMode.SENTINEL


def test_create_cluster_client(monkeypatch):
    cluster_cls = MagicMock()
    monkeypatch.setattr(factory_module, "RedisCluster", cluster_cls)

    adapter = StoreClientFactory.create_client({"mode": "cluster", "nodes": [{"host": "n1", "port": 7000}]})

    nodes = cluster_cls.call_args.kwargs["startup_nodes"]
    assert [(node.host, node.port) for node in nodes] == [("n1", 7000)]
    assert adapter.mode is StoreMode.CLUSTER


def test_linear_capped_backoff():
    backoff = LinearCappedBackoff()
    assert backoff.compute(1) == pytest.approx(0.05)
    assert backoff.compute(10) == pytest.approx(0.5)
    assert backoff.compute(100) == 2.0


@pytest.mark.asyncio
async def test_adapter_lifecycle(fake_redis):
    adapter = StoreClientAdapter(fake_redis)
    assert adapter.status == "wait"

    assert await adapter.connect() == "ready"
    assert await adapter.set("job", "owner", "PX", 5000) == "OK"
    assert await adapter.get("job") == b"owner"
    assert 0 < await fake_redis.pttl("job") <= 5000
    assert await adapter.exists("job") == 1
    assert await adapter.eval("return redis.call('get', KEYS[1])", 1, "job") == b"owner"
    assert await adapter.call("PING")
    assert await adapter.delete("job") == 1
    assert await adapter.delete() == 0

    assert await adapter.quit() == "OK"
    assert adapter.status == "end"


@pytest.mark.asyncio
async def test_adapter_set_rejects_unknown_expiry(fake_redis):
    adapter = StoreClientAdapter(fake_redis)
    with pytest.raises(ValidationError):
        await adapter.set("job", "owner", "KEEPTTL", 10)


@pytest.mark.asyncio
async def test_adapter_connect_failure_sets_error_status():
    client = MagicMock()
    client.ping = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    adapter = StoreClientAdapter(client)

    assert await adapter.connect() == "error"
    assert isinstance(adapter.last_error, RedisConnectionError)


@pytest.mark.asyncio
async def test_adapter_command_failure_raises_store_error():
    client = MagicMock()
    client.get = AsyncMock(side_effect=RedisConnectionError("connection reset"))
    adapter = StoreClientAdapter(client)

    with pytest.raises(StoreConnectionError):
        await adapter.get("job")
    assert adapter.status == "error"


@pytest.mark.asyncio
async def test_cluster_connect_tolerates_single_node_failure():
    first, second = MagicMock(name="n1"), MagicMock(name="n2")
    client = MagicMock()
    client.initialize = AsyncMock()
    client.get_nodes.return_value = [first, second]
    client.ping = AsyncMock(side_effect=[RedisConnectionError("node down"), True])
    adapter = StoreClientAdapter(client, mode=StoreMode.CLUSTER)

    assert await adapter.connect() == "ready"
    assert client.ping.await_count == 2


@pytest.mark.asyncio
async def test_cluster_connect_fails_without_reachable_nodes():
    client = MagicMock()
    client.initialize = AsyncMock()
    client.get_nodes.return_value = [MagicMock(), MagicMock()]
    client.ping = AsyncMock(side_effect=RedisConnectionError("node down"))
    adapter = StoreClientAdapter(client, mode=StoreMode.CLUSTER)

    assert await adapter.connect() == "error"
    assert isinstance(adapter.last_error, StoreConnectionError)
