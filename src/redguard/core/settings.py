"""Lock and store settings loader."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from redguard.core.errors import ConfigError
from redguard.utils.env import get_int_env, get_list_env


class StoreMode(str, Enum):
    """Redis connection topology."""

    STANDALONE = "standalone"
    SENTINEL = "sentinel"
    CLUSTER = "cluster"


class StoreNode(BaseModel):
    host: str
    port: int = 6379

    @classmethod
    def parse(cls, value: str) -> "StoreNode":
        """Build a node from a ``host:port`` string."""
        host, _, port = value.rpartition(":")
        if not host:
            return cls(host=value)
        try:
            return cls(host=host, port=int(port))
        except ValueError as exc:
            raise ConfigError(f"Invalid store node address: {value!r}") from exc


class _StoreConfigBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    password: Optional[str] = None
    username: Optional[str] = None
    db: int = 0
    connect_timeout_ms: int = Field(default=10000, gt=0, alias="connectTimeout")
    command_timeout_ms: int = Field(default=5000, gt=0, alias="commandTimeout")
    max_retries_per_request: int = Field(default=3, ge=0, alias="maxRetriesPerRequest")


class StandaloneStoreConfig(_StoreConfigBase):
    mode: Literal["standalone"] = "standalone"
    # Mandatory fields are checked by StoreClientFactory.validate_config
    host: Optional[str] = None
    port: Optional[int] = None


class SentinelStoreConfig(_StoreConfigBase):
    mode: Literal["sentinel"] = "sentinel"
    sentinels: List[StoreNode] = Field(default_factory=list)
    name: Optional[str] = None
    sentinel_password: Optional[str] = Field(default=None, alias="sentinelPassword")


class ClusterStoreConfig(_StoreConfigBase):
    mode: Literal["cluster"] = "cluster"
    nodes: List[StoreNode] = Field(default_factory=list)


StoreConfig = Annotated[
    Union[StandaloneStoreConfig, SentinelStoreConfig, ClusterStoreConfig],
    Field(discriminator="mode"),
]

_STORE_CONFIG_ADAPTER: TypeAdapter = TypeAdapter(StoreConfig)
_STORE_MODES = {mode.value for mode in StoreMode}


def _check_mode_tag(data: Mapping[str, Any]) -> None:
    mode = data.get("mode")
    if mode is None:
        raise ConfigError("Store configuration requires a 'mode' (standalone, sentinel or cluster)")
    if isinstance(mode, StoreMode):
        return
    if mode not in _STORE_MODES:
        raise ConfigError(f"Unsupported store mode: {mode}")


def parse_store_config(data: Any) -> StoreConfig:
    """Turn a mapping (or an existing model) into a typed store config."""
    if isinstance(data, _StoreConfigBase):
        return data
    if not isinstance(data, Mapping):
        raise ConfigError("Store configuration cannot be empty")
    _check_mode_tag(data)
    payload = dict(data)
    if isinstance(payload["mode"], StoreMode):
        payload["mode"] = payload["mode"].value
    try:
        return _STORE_CONFIG_ADAPTER.validate_python(payload)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid store configuration: {exc}") from exc


def _default_store() -> StandaloneStoreConfig:
    return StandaloneStoreConfig(host="127.0.0.1", port=6379)


def _canonical_keys(model: type[BaseModel], data: Mapping[str, Any]) -> Dict[str, Any]:
    lookup: Dict[str, str] = {}
    for name, field in model.model_fields.items():
        lookup[name] = name
        if field.alias:
            lookup[field.alias] = name
        if isinstance(field.validation_alias, AliasChoices):
            for choice in field.validation_alias.choices:
                if isinstance(choice, str):
                    lookup[choice] = name
    return {lookup.get(key, key): value for key, value in data.items()}


class LockSettings(BaseModel):
    """Quorum-lock options: ttl, drift, retry policy, key namespace and store topology."""

    model_config = ConfigDict(populate_by_name=True)

    lock_timeout: int = Field(default=10000, gt=0, alias="lockTimeOut")
    clock_drift_factor: float = Field(default=0.01, ge=0, le=1, alias="clockDriftFactor")
    max_retries: int = Field(default=3, ge=-1, alias="maxRetries")
    retry_delay_ms: int = Field(default=200, ge=0, alias="retryDelayMs")
    retry_jitter_ms: int = Field(default=200, ge=0, alias="retryJitterMs")
    extension_threshold_ms: int = Field(default=500, ge=0, alias="automaticExtensionThreshold")
    key_prefix: str = Field(default="redlock:", alias="keyPrefix")
    store: StoreConfig = Field(
        default_factory=_default_store,
        validation_alias=AliasChoices("store", "storeConfig", "redisConfig"),
    )

    @field_validator("store", mode="before")
    @classmethod
    def _require_mode(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            # ConfigError is a ValueError, pydantic reports it as a field error
            _check_mode_tag(value)
        return value

    @classmethod
    def parse(cls, data: Union["LockSettings", Mapping[str, Any], None]) -> "LockSettings":
        if data is None:
            return cls()
        if isinstance(data, LockSettings):
            return data
        try:
            return cls.model_validate(_canonical_keys(cls, data))
        except PydanticValidationError as exc:
            raise ConfigError(f"Invalid lock settings: {exc}") from exc

    def merged(self, overrides: Mapping[str, Any]) -> "LockSettings":
        """Return a copy with ``overrides`` (field names or aliases) applied and re-validated."""
        current: Dict[str, Any] = {name: getattr(self, name) for name in type(self).model_fields}
        current.update(_canonical_keys(type(self), overrides))
        return LockSettings.parse(current)


class ScheduleSettings(BaseModel):
    timezone: str = "UTC"


class RedguardSettings(BaseModel):
    lock: LockSettings = Field(default_factory=LockSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)

    @classmethod
    def from_file(cls, path: Path) -> "RedguardSettings":
        data = yaml.safe_load(path.read_text()) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {path} must contain a mapping")
        try:
            return cls(
                lock=LockSettings.parse(data.get("lock")),
                schedule=ScheduleSettings.model_validate(data.get("schedule") or {}),
            )
        except PydanticValidationError as exc:
            raise ConfigError(f"Invalid redguard settings: {exc}") from exc

    @classmethod
    def from_env(cls) -> "RedguardSettings":
        """Build settings from REDGUARD_* / REDIS_* environment variables."""
        mode = os.getenv("REDGUARD_STORE_MODE", StoreMode.STANDALONE.value).strip().lower()
        store: Dict[str, Any] = {"mode": mode, "password": os.getenv("REDIS_PASSWORD") or None}
        db = get_int_env("REDIS_DB")
        if db is not None:
            store["db"] = db
        if mode == StoreMode.SENTINEL.value:
            store["sentinels"] = [StoreNode.parse(item) for item in get_list_env("REDGUARD_SENTINELS")]
            store["name"] = os.getenv("REDGUARD_SENTINEL_MASTER")
            store["sentinel_password"] = os.getenv("REDGUARD_SENTINEL_PASSWORD") or None
        elif mode == StoreMode.CLUSTER.value:
            store["nodes"] = [StoreNode.parse(item) for item in get_list_env("REDGUARD_CLUSTER_NODES")]
        else:
            store["host"] = os.getenv("REDIS_HOST", "127.0.0.1")
            store["port"] = get_int_env("REDIS_PORT", default=6379)

        lock: Dict[str, Any] = {"store": store}
        for env_name, field in (
            ("REDGUARD_LOCK_TIMEOUT", "lock_timeout"),
            ("REDGUARD_MAX_RETRIES", "max_retries"),
            ("REDGUARD_RETRY_DELAY_MS", "retry_delay_ms"),
            ("REDGUARD_RETRY_JITTER_MS", "retry_jitter_ms"),
        ):
            value = get_int_env(env_name)
            if value is not None:
                lock[field] = value
        drift = os.getenv("REDGUARD_CLOCK_DRIFT_FACTOR")
        if drift:
            lock["clock_drift_factor"] = drift
        prefix = os.getenv("REDGUARD_KEY_PREFIX")
        if prefix is not None:
            lock["key_prefix"] = prefix

        return cls(
            lock=LockSettings.parse(lock),
            schedule=ScheduleSettings(timezone=os.getenv("REDGUARD_TIMEZONE", "UTC")),
        )
