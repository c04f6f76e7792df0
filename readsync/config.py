"""
Configuration management for readsync stores.

The configuration is stored as a TOML file in the store directory.
It selects the sync provider and sets the scheduler and archive limits.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w

from .errors import ConfigError


CONFIG_FILENAME = "readsync.toml"
CONFIG_VERSION = 1
STATE_DB_FILENAME = "state.db"


def get_store_path() -> Path:
    """Store directory from READSYNC_STORE_PATH, else ~/.readsync."""
    env = os.environ.get("READSYNC_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".readsync"


@dataclass
class ProviderConfig:
    """Configuration for the sync provider."""
    name: str = "none"
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncSettings:
    """Scheduler timing, in seconds."""
    periodic_interval: int = 15 * 60
    debounce: int = 3
    min_interval: int = 30
    base_backoff: int = 60
    max_backoff: int = 60 * 60


@dataclass
class ArchiveSettings:
    max_items: int = 200
    write_delay_ms: int = 300


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    sync: SyncSettings = field(default_factory=SyncSettings)
    archive: ArchiveSettings = field(default_factory=ArchiveSettings)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def state_db_path(self) -> Path:
        return self.path / STATE_DB_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _section(cls, data: dict):
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    try:
        return cls(**known)
    except TypeError as e:
        raise ConfigError(f"Invalid [{cls.__name__}] section: {e}", "load") from e


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ConfigError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}", "load") from e

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ConfigError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION})", "load",
        )

    provider = data.get("provider", {})
    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        provider=ProviderConfig(
            name=provider.get("name", "none"),
            params={k: v for k, v in provider.items() if k != "name"},
        ),
        sync=_section(SyncSettings, data.get("sync", {})),
        archive=_section(ArchiveSettings, data.get("archive", {})),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    provider = {"name": config.provider.name}
    provider.update(config.provider.params)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "provider": provider,
        "sync": vars(config.sync).copy(),
        "archive": vars(config.archive).copy(),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
