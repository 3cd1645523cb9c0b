"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from fieldsync.config import Settings, get_settings
from fieldsync.store import StorageLimits


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("FIELDSYNC_POLL_INTERVAL", "FIELDSYNC_MAX_RETRIES", "FIELDSYNC_DATA_DIR"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings(_env_file=None)

        assert settings.poll_interval == 10.0
        assert settings.reconnect_settle_delay == 2.0
        assert settings.max_retries == 5
        assert settings.database_path.name == "offline.db"
        assert "~" not in str(settings.data_path)

    def test_env_prefix(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FIELDSYNC_POLL_INTERVAL", "30")
        monkeypatch.setenv("FIELDSYNC_DATA_DIR", str(tmp_path))
        settings = Settings(_env_file=None)

        assert settings.poll_interval == 30.0
        assert settings.database_path == tmp_path / "offline.db"

    @pytest.mark.parametrize(
        "field, value",
        [("poll_interval", 0), ("max_retries", 0), ("sync_item_delay", -1), ("log_level", "LOUD")],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_log_level_normalized(self):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_storage_limits_from_settings(self):
        limits = StorageLimits.from_settings(
            Settings(_env_file=None, max_total_mb=10, max_photo_kb=100, max_retries=3)
        )

        assert limits.max_total_bytes == 10 * 1024 * 1024
        assert limits.max_photo_size_bytes == 100 * 1024
        assert limits.max_retries == 3

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
