from __future__ import annotations

from typing import Callable, List

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from redguard.core.manager import LockManager
from redguard.core.settings import LockSettings, StoreConfig
from redguard.store.adapter import StoreClientAdapter


@pytest.fixture
def fake_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def fake_redis(fake_server: FakeServer) -> FakeRedis:
    return FakeRedis(server=fake_server)


class CountingFactory:
    """Client factory handing out adapters over one fake server."""

    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.calls: List[StoreConfig] = []
        self.adapters: List[StoreClientAdapter] = []

    def __call__(self, config: StoreConfig) -> StoreClientAdapter:
        self.calls.append(config)
        adapter = StoreClientAdapter(FakeRedis(server=self.server))
        self.adapters.append(adapter)
        return adapter


@pytest.fixture
def client_factory(fake_server: FakeServer) -> CountingFactory:
    return CountingFactory(fake_server)


@pytest.fixture
def make_manager(client_factory: CountingFactory) -> Callable[..., LockManager]:
    def _make(**overrides) -> LockManager:
        settings = {"max_retries": 0, "retry_delay_ms": 10, "retry_jitter_ms": 0}
        settings.update(overrides)
        return LockManager(LockSettings.parse(settings), client_factory=client_factory)

    return _make


@pytest.fixture(autouse=True)
def _forget_singleton():
    LockManager._instance = None
    yield
    LockManager._instance = None
