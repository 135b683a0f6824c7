from __future__ import annotations

import pytest

from redguard.core.errors import ConfigError
from redguard.core.settings import (
    ClusterStoreConfig,
    LockSettings,
    RedguardSettings,
    SentinelStoreConfig,
    StandaloneStoreConfig,
    StoreMode,
    StoreNode,
    parse_store_config,
)
from redguard.utils.env import get_bool_env, get_int_env, get_list_env


def test_lock_settings_defaults():
    settings = LockSettings()
    assert settings.lock_timeout == 10000
    assert settings.clock_drift_factor == 0.01
    assert settings.max_retries == 3
    assert settings.retry_delay_ms == 200
    assert settings.key_prefix == "redlock:"
    assert isinstance(settings.store, StandaloneStoreConfig)
    assert (settings.store.host, settings.store.port) == ("127.0.0.1", 6379)


def test_lock_settings_accept_option_map_keys():
    settings = LockSettings.parse(
        {
            "lockTimeOut": 5000,
            "clockDriftFactor": 0.02,
            "maxRetries": 1,
            "retryDelayMs": 50,
            "keyPrefix": "jobs:",
            "storeConfig": {"mode": "sentinel", "sentinels": [{"host": "s1", "port": 26379}], "name": "mymaster"},
        }
    )
    assert settings.lock_timeout == 5000
    assert settings.clock_drift_factor == 0.02
    assert settings.key_prefix == "jobs:"
    assert isinstance(settings.store, SentinelStoreConfig)
    assert settings.store.sentinels[0].host == "s1"


@pytest.mark.parametrize("store", [{"host": "localhost", "port": 6379}, {"mode": "replica", "host": "x"}])
def test_store_mode_tag_is_required(store):
    with pytest.raises(ConfigError):
        LockSettings.parse({"store": store})
    with pytest.raises(ConfigError):
        parse_store_config(store)


def test_drift_factor_out_of_range_is_config_error():
    with pytest.raises(ConfigError):
        LockSettings.parse({"clock_drift_factor": 1.5})


def test_parse_store_config_builds_variant():
    config = parse_store_config({"mode": StoreMode.CLUSTER, "nodes": [{"host": "n1", "port": 7000}]})
    assert isinstance(config, ClusterStoreConfig)
    assert config.nodes == [StoreNode(host="n1", port=7000)]


def test_merged_applies_aliases_and_keeps_rest():
    settings = LockSettings(key_prefix="a:")
    updated = settings.merged({"lockTimeOut": 3000})
    assert updated.lock_timeout == 3000
    assert updated.key_prefix == "a:"
    assert settings.lock_timeout == 10000


def test_from_file(tmp_path):
    path = tmp_path / "redguard.yml"
    path.write_text(
        "lock:\n"
        "  lock_timeout: 4000\n"
        "  store:\n"
        "    mode: standalone\n"
        "    host: redis.local\n"
        "    port: 6380\n"
        "schedule:\n"
        "  timezone: Europe/Berlin\n"
    )
    settings = RedguardSettings.from_file(path)
    assert settings.lock.lock_timeout == 4000
    assert settings.lock.store.host == "redis.local"
    assert settings.schedule.timezone == "Europe/Berlin"


def test_from_file_rejects_bad_values(tmp_path):
    path = tmp_path / "redguard.yml"
    path.write_text("lock:\n  lock_timeout: -1\n")
    with pytest.raises(ConfigError):
        RedguardSettings.from_file(path)


def test_from_env_cluster(monkeypatch):
    monkeypatch.setenv("REDGUARD_STORE_MODE", "cluster")
    monkeypatch.setenv("REDGUARD_CLUSTER_NODES", "n1:7000 n2:7001")
    monkeypatch.setenv("REDGUARD_LOCK_TIMEOUT", "2500")
    monkeypatch.setenv("REDGUARD_KEY_PREFIX", "env:")
    settings = RedguardSettings.from_env()
    assert isinstance(settings.lock.store, ClusterStoreConfig)
    assert [node.port for node in settings.lock.store.nodes] == [7000, 7001]
    assert settings.lock.lock_timeout == 2500
    assert settings.lock.key_prefix == "env:"


def test_from_env_standalone_defaults(monkeypatch):
    for name in ("REDGUARD_STORE_MODE", "REDIS_HOST", "REDIS_PORT", "REDGUARD_LOCK_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    settings = RedguardSettings.from_env()
    assert settings.lock.store.mode == "standalone"
    assert settings.lock.store.port == 6379
    assert settings.schedule.timezone == "UTC"


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("FLAG", "off")
    monkeypatch.setenv("COUNT", " 42 ")
    monkeypatch.setenv("NODES", 'a:1 "b:2"')
    monkeypatch.setenv("BROKEN", "many")
    assert get_bool_env("FLAG", default=True) is False
    assert get_bool_env("UNSET_FLAG", default=True) is True
    assert get_int_env("COUNT") == 42
    assert get_int_env("UNSET_COUNT", default=7) == 7
    assert get_list_env("NODES") == ["a:1", "b:2"]
    with pytest.raises(ValueError, match="BROKEN"):
        get_int_env("BROKEN")
