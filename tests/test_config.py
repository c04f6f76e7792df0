"""
Tests for store configuration (readsync.toml).
"""

import pytest

from readsync.config import (
    CONFIG_FILENAME,
    ProviderConfig,
    StoreConfig,
    get_store_path,
    load_config,
    load_or_create_config,
    save_config,
)
from readsync.errors import ConfigError


class TestStorePath:
    """Store location resolution."""

    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("READSYNC_STORE_PATH", str(tmp_path / "custom"))
        assert get_store_path() == tmp_path / "custom"

    def test_default(self, monkeypatch):
        monkeypatch.delenv("READSYNC_STORE_PATH", raising=False)
        assert get_store_path().name == ".readsync"


class TestLoadSave:
    """Round trips and validation."""

    def test_create_with_defaults(self, tmp_path):
        config = load_or_create_config(tmp_path / "store")
        assert config.exists()
        assert config.provider.name == "none"
        assert config.sync.debounce == 3
        assert config.archive.max_items == 200
        assert config.state_db_path == tmp_path / "store" / "state.db"

    def test_round_trip(self, tmp_path):
        config = StoreConfig(path=tmp_path)
        config.provider = ProviderConfig("folder", {"folder": "/mnt/shared/readsync"})
        config.sync.periodic_interval = 600
        config.archive.max_items = 50
        save_config(config)

        loaded = load_config(tmp_path)
        assert loaded.provider.name == "folder"
        assert loaded.provider.params == {"folder": "/mnt/shared/readsync"}
        assert loaded.sync.periodic_interval == 600
        assert loaded.archive.max_items == 50
        assert loaded.created == config.created

    def test_existing_config_is_loaded(self, tmp_path):
        config = StoreConfig(path=tmp_path)
        config.sync.min_interval = 99
        save_config(config)
        assert load_or_create_config(tmp_path).sync.min_interval == 99

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_unknown_keys_ignored(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(
            '[store]\nversion = 1\n\n[sync]\ndebounce = 7\nfuture_option = true\n'
        )
        assert load_config(tmp_path).sync.debounce == 7

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_unparseable(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store\n")
        with pytest.raises(ConfigError):
            load_config(tmp_path)
