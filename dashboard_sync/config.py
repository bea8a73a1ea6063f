"""
Configuration for the sync layer, the query cache and the hosted store.

Configuration can be provided directly, via environment variables, or via
a YAML file:

Environment Variables:
    DASHBOARD_CACHE_TTL: Default cache TTL in seconds (default: 300)
    DASHBOARD_CACHE_MAX_SIZE: Maximum cache entries (default: 100)
    DASHBOARD_CACHE_SWEEP_INTERVAL: Seconds between expiry sweeps (default: 60)
    DASHBOARD_CACHE_ENABLED: "false" disables the cache
    DASHBOARD_READ_TTL: TTL for cached table reads in seconds (default: 120)
    DASHBOARD_SUPPRESSION_WINDOW: Self-echo window in seconds (default: 2)
    DASHBOARD_DEBOUNCE_DELAY: Reconciliation debounce in seconds (default: 0.5)
    DASHBOARD_AUTO_REFRESH_INTERVAL: Periodic reload in seconds (unset: off)
    DASHBOARD_SNAPSHOT_PATH: Directory for the file snapshot
    DASHBOARD_COSMOS_ENDPOINT: Cosmos DB endpoint URL
    DASHBOARD_COSMOS_KEY: Cosmos DB key (if using key auth)
    DASHBOARD_COSMOS_DATABASE: Database name (default: dashboard)
    DASHBOARD_COSMOS_CONTAINER: Container name (default: table_records)
    DASHBOARD_COSMOS_AUTH_METHOD: key | default_credential | managed_identity
    AZURE_CLIENT_ID: Client id for a user-assigned managed identity
    DASHBOARD_LOG_LEVEL: Level for the dashboard_sync loggers (default: INFO)
    DASHBOARD_LOG_FORMAT: "json" for single-line JSON records on stdout (default: text)

YAML layout::

    cache:
      default_ttl: 300
      max_size: 100
    sync:
      suppression_window: 2.0
      debounce_delay: 0.5
    cosmos:
      endpoint: https://example.documents.azure.com:443/
      auth_method: default_credential
    snapshot_path: ~/.dashboard/snapshots
    log_format: json
    log_level: DEBUG
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class CosmosAuthMethod(Enum):
    """Authentication method for Cosmos DB.

    KEY: Account key
    DEFAULT_CREDENTIAL: Azure DefaultAzureCredential (recommended)
    MANAGED_IDENTITY: Azure Managed Identity explicitly
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"


@dataclass
class CacheConfig:
    """Query cache policy. Durations are in seconds."""

    default_ttl: float = 300.0
    max_size: int = 100
    sweep_interval: float = 60.0
    enabled: bool = True
    read_ttl: float = 120.0


@dataclass
class SyncConfig:
    """Change-feed reconciliation timing. Durations are in seconds."""

    suppression_window: float = 2.0
    debounce_delay: float = 0.5
    auto_refresh_interval: float | None = None


@dataclass
class CosmosSettings:
    """Connection settings for the Cosmos DB remote store."""

    endpoint: str | None = None
    key: str | None = None
    database: str = "dashboard"
    container: str = "table_records"
    auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    client_id: str | None = None
    poll_interval: float = 2.0
    tombstone_ttl: int = 60


LOG_FORMATS = ("text", "json")

_TOP_LEVEL_KEYS = {"cache", "sync", "cosmos", "snapshot_path", "log_level", "log_format"}


@dataclass
class DashboardConfig:
    """Top-level configuration."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    cosmos: CosmosSettings = field(default_factory=CosmosSettings)
    snapshot_path: Path | None = None
    log_level: str = "INFO"
    log_format: str = "text"

    def validate(self) -> DashboardConfig:
        """Check value types and ranges.

        Raises:
            ConfigurationError: If a duration or size is not a positive number,
                or the log settings are unknown
        """
        positive = {
            "cache.default_ttl": self.cache.default_ttl,
            "cache.max_size": self.cache.max_size,
            "cache.sweep_interval": self.cache.sweep_interval,
            "cache.read_ttl": self.cache.read_ttl,
            "sync.debounce_delay": self.sync.debounce_delay,
            "cosmos.poll_interval": self.cosmos.poll_interval,
        }
        for name, value in positive.items():
            _require_number(name, value)
            if value <= 0:
                raise ConfigurationError(f"{name} must be > 0, got {value}", field=name)

        _require_number("sync.suppression_window", self.sync.suppression_window)
        if self.sync.suppression_window < 0:
            raise ConfigurationError(
                f"sync.suppression_window must be >= 0, got {self.sync.suppression_window}",
                field="sync.suppression_window",
            )
        interval = self.sync.auto_refresh_interval
        if interval is not None:
            _require_number("sync.auto_refresh_interval", interval)
            if interval <= 0:
                raise ConfigurationError(
                    f"sync.auto_refresh_interval must be > 0, got {interval}",
                    field="sync.auto_refresh_interval",
                )

        if self.log_format not in LOG_FORMATS:
            raise ConfigurationError(
                f"log_format must be one of {', '.join(LOG_FORMATS)}, got {self.log_format!r}",
                field="log_format",
            )
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise ConfigurationError(f"Unknown log_level {self.log_level!r}", field="log_level")
        return self

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(str(self.log_level).upper())

    @classmethod
    def from_environment(cls) -> DashboardConfig:
        """Create configuration from environment variables.

        Unparseable numbers are logged and replaced by their defaults.
        """
        env = os.environ
        cache = CacheConfig(
            default_ttl=_env_number("DASHBOARD_CACHE_TTL", 300.0),
            max_size=int(_env_number("DASHBOARD_CACHE_MAX_SIZE", 100)),
            sweep_interval=_env_number("DASHBOARD_CACHE_SWEEP_INTERVAL", 60.0),
            enabled=env.get("DASHBOARD_CACHE_ENABLED", "true").lower() != "false",
            read_ttl=_env_number("DASHBOARD_READ_TTL", 120.0),
        )
        refresh = env.get("DASHBOARD_AUTO_REFRESH_INTERVAL")
        sync = SyncConfig(
            suppression_window=_env_number("DASHBOARD_SUPPRESSION_WINDOW", 2.0),
            debounce_delay=_env_number("DASHBOARD_DEBOUNCE_DELAY", 0.5),
            auto_refresh_interval=(
                _env_number("DASHBOARD_AUTO_REFRESH_INTERVAL", None) if refresh else None
            ),
        )
        cosmos = CosmosSettings(
            endpoint=env.get("DASHBOARD_COSMOS_ENDPOINT"),
            key=env.get("DASHBOARD_COSMOS_KEY"),
            database=env.get("DASHBOARD_COSMOS_DATABASE", "dashboard"),
            container=env.get("DASHBOARD_COSMOS_CONTAINER", "table_records"),
            auth_method=_parse_auth_method(
                env.get("DASHBOARD_COSMOS_AUTH_METHOD", "default_credential")
            ),
            client_id=env.get("AZURE_CLIENT_ID"),
        )
        snapshot = env.get("DASHBOARD_SNAPSHOT_PATH")
        return cls(
            cache=cache,
            sync=sync,
            cosmos=cosmos,
            snapshot_path=Path(snapshot).expanduser() if snapshot else None,
            log_level=env.get("DASHBOARD_LOG_LEVEL", "INFO"),
            log_format=env.get("DASHBOARD_LOG_FORMAT", "text").lower(),
        ).validate()

    @classmethod
    def from_file(cls, path: Path | str) -> DashboardConfig:
        """Load configuration from a YAML file.

        A missing file yields the defaults.

        Raises:
            ConfigurationError: If the file is not valid YAML or has bad values
        """
        path = Path(path).expanduser()
        if not path.exists():
            logger.debug(f"Config file {path} not found, using defaults")
            return cls().validate()

        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Expected a mapping at the top of {path}")

        return cls.from_dict(raw).validate()

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DashboardConfig:
        """Build configuration from parsed YAML/JSON.

        Raises:
            ConfigurationError: On unknown keys, non-mapping sections or
                values of the wrong type
        """
        unknown = set(raw) - _TOP_LEVEL_KEYS
        if unknown:
            raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")

        cosmos_raw = dict(_section(raw, "cosmos"))
        if "auth_method" in cosmos_raw:
            cosmos_raw["auth_method"] = _parse_auth_method(str(cosmos_raw["auth_method"]))
        snapshot = raw.get("snapshot_path")
        if snapshot is not None and not isinstance(snapshot, str):
            raise ConfigurationError(
                f"snapshot_path must be a string, got {snapshot!r}", field="snapshot_path"
            )
        return cls(
            cache=_build(CacheConfig, _section(raw, "cache"), "cache"),
            sync=_build(SyncConfig, _section(raw, "sync"), "sync"),
            cosmos=_build(CosmosSettings, cosmos_raw, "cosmos"),
            snapshot_path=Path(snapshot).expanduser() if snapshot else None,
            log_level=str(raw.get("log_level", "INFO")),
            log_format=str(raw.get("log_format", "text")).lower(),
        )


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(
            f"{name} settings must be a mapping, got {type(section).__name__}", field=name
        )
    return section


def _build(dataclass_type: type, section: dict[str, Any], name: str) -> Any:
    known = {f.name: f.type for f in fields(dataclass_type)}
    unknown = set(section) - set(known)
    if unknown:
        raise ConfigurationError(
            f"Unknown {name} settings: {', '.join(sorted(unknown))}", field=name
        )
    values = {
        key: _coerce(f"{name}.{key}", str(known[key]), value) for key, value in section.items()
    }
    return dataclass_type(**values)


def _coerce(name: str, type_name: str, value: Any) -> Any:
    # Field types are annotation strings (postponed evaluation)
    if value is None and type_name.endswith("| None"):
        return None
    base = type_name.split("|")[0].strip()
    if base == "bool":
        if not isinstance(value, bool):
            raise ConfigurationError(f"{name} must be true or false, got {value!r}", field=name)
        return value
    if base in ("int", "float"):
        if isinstance(value, bool):
            raise ConfigurationError(f"{name} must be a number, got {value!r}", field=name)
        try:
            number = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{name} must be a number, got {value!r}", field=name) from e
        if base == "int":
            if not number.is_integer():
                raise ConfigurationError(
                    f"{name} must be a whole number, got {value!r}", field=name
                )
            return int(number)
        return number
    if base == "str":
        if isinstance(value, (dict, list)):
            raise ConfigurationError(f"{name} must be a string, got {value!r}", field=name)
        return str(value)
    return value


def _require_number(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number, got {value!r}", field=name)


def _env_number(name: str, default: float | None) -> Any:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={value!r}, using {default}")
        return default


def _parse_auth_method(value: str) -> CosmosAuthMethod:
    try:
        return CosmosAuthMethod(value.lower())
    except ValueError:
        logger.warning(f"Unknown Cosmos auth method {value!r}, using default_credential")
        return CosmosAuthMethod.DEFAULT_CREDENTIAL
