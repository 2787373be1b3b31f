"""Configuration loading for Loadout."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .storage.tracked_keys import DEFAULT_EXCLUDED_KEYS, DEFAULT_PREFIXES
from .storage.upgrade_guard import DEFAULT_JSON_KEYS, DEFAULT_PROTECTED_KEYS

_URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)


@dataclass
class NodeConfig:
    name: str = "loadout-node"
    app_version: str = "0.0.0"


@dataclass
class StorageConfig:
    db_path: str = "~/.loadout/state.db"


@dataclass
class SyncConfig:
    """Configuration for remote snapshot synchronization."""

    enabled: bool = True
    url: str = ""  # Base URL of the remote table service
    api_key: str = ""
    table: str = "loadout_sync"
    space: str = "default"
    poll_interval_ms: int = 2500
    timeout_seconds: float = 10.0
    key_prefixes: list[str] = field(default_factory=lambda: list(DEFAULT_PREFIXES))
    excluded_keys: list[str] = field(
        default_factory=lambda: sorted(DEFAULT_EXCLUDED_KEYS)
    )

    @property
    def is_configured(self) -> bool:
        """True if sync is enabled and both endpoint and credential are set."""
        return self.enabled and bool(self.url) and bool(self.api_key)

    @property
    def url_valid(self) -> bool:
        return bool(_URL_PATTERN.match(self.url))

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000


@dataclass
class MQTTConfig:
    """Broker used for realtime change notifications."""

    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    topic_prefix: str = "loadout/sync"


@dataclass
class AuditConfig:
    history_limit: int = 2000


@dataclass
class UpgradeGuardConfig:
    enabled: bool = True
    protected_keys: list[str] = field(
        default_factory=lambda: list(DEFAULT_PROTECTED_KEYS)
    )
    json_keys: list[str] = field(default_factory=lambda: sorted(DEFAULT_JSON_KEYS))


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    upgrade_guard: UpgradeGuardConfig = field(default_factory=UpgradeGuardConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with LOADOUT_ prefix."""
    return os.environ.get(f"LOADOUT_{key}", default)


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Node overrides
    if name := _get_env("NODE_NAME"):
        config.node.name = name
    if app_version := _get_env("APP_VERSION"):
        config.node.app_version = app_version

    # Storage overrides
    if db_path := _get_env("STORAGE_DB_PATH"):
        config.storage.db_path = db_path

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _parse_bool(sync_enabled)
    if url := _get_env("SYNC_URL"):
        config.sync.url = url
    if api_key := _get_env("SYNC_API_KEY"):
        config.sync.api_key = api_key
    if table := _get_env("SYNC_TABLE"):
        config.sync.table = table
    if space := _get_env("SYNC_SPACE"):
        config.sync.space = space
    if interval := _get_env("SYNC_POLL_INTERVAL_MS"):
        config.sync.poll_interval_ms = int(interval)

    # MQTT overrides
    if mqtt_enabled := _get_env("MQTT_ENABLED"):
        config.mqtt.enabled = _parse_bool(mqtt_enabled)
    if broker := _get_env("MQTT_BROKER"):
        config.mqtt.broker = broker
    if port := _get_env("MQTT_PORT"):
        config.mqtt.port = int(port)
    if username := _get_env("MQTT_USERNAME"):
        config.mqtt.username = username
    if password := _get_env("MQTT_PASSWORD"):
        config.mqtt.password = password

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse node config
            if "node" in data:
                node_data = data["node"]
                config.node = NodeConfig(
                    name=node_data.get("name", config.node.name),
                    app_version=str(
                        node_data.get("app_version", config.node.app_version)
                    ),
                )

            # Parse storage config
            if "storage" in data:
                config.storage = StorageConfig(
                    db_path=data["storage"].get("db_path", config.storage.db_path)
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    url=sync_data.get("url", config.sync.url) or "",
                    api_key=sync_data.get("api_key", config.sync.api_key) or "",
                    table=sync_data.get("table", config.sync.table),
                    space=sync_data.get("space", config.sync.space),
                    poll_interval_ms=sync_data.get(
                        "poll_interval_ms", config.sync.poll_interval_ms
                    ),
                    timeout_seconds=sync_data.get(
                        "timeout_seconds", config.sync.timeout_seconds
                    ),
                    key_prefixes=sync_data.get(
                        "key_prefixes", config.sync.key_prefixes
                    ),
                    excluded_keys=sync_data.get(
                        "excluded_keys", config.sync.excluded_keys
                    ),
                )

            # Parse MQTT config
            if "mqtt" in data:
                mqtt_data = data["mqtt"]
                config.mqtt = MQTTConfig(
                    enabled=mqtt_data.get("enabled", config.mqtt.enabled),
                    broker=mqtt_data.get("broker", config.mqtt.broker),
                    port=mqtt_data.get("port", config.mqtt.port),
                    username=mqtt_data.get("username"),
                    password=mqtt_data.get("password"),
                    topic_prefix=mqtt_data.get(
                        "topic_prefix", config.mqtt.topic_prefix
                    ),
                )

            # Parse audit config
            if "audit" in data:
                config.audit = AuditConfig(
                    history_limit=data["audit"].get(
                        "history_limit", config.audit.history_limit
                    )
                )

            # Parse upgrade guard config
            if "upgrade_guard" in data:
                guard_data = data["upgrade_guard"]
                config.upgrade_guard = UpgradeGuardConfig(
                    enabled=guard_data.get("enabled", config.upgrade_guard.enabled),
                    protected_keys=guard_data.get(
                        "protected_keys", config.upgrade_guard.protected_keys
                    ),
                    json_keys=guard_data.get(
                        "json_keys", config.upgrade_guard.json_keys
                    ),
                )

    # Apply environment variable overrides
    return _apply_env_overrides(config)
