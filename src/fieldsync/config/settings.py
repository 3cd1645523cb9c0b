"""fieldsync configuration settings using pydantic-settings."""

from functools import cached_property
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the offline sync client.

    Settings are loaded from environment variables with the FIELDSYNC_ prefix.
    For example, FIELDSYNC_POLL_INTERVAL=30 sets poll_interval to 30.
    """

    model_config = SettingsConfigDict(
        env_prefix="FIELDSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote API
    api_url: str = "http://localhost:6001/api"
    api_timeout: float = 30.0
    platform_id: str | None = None

    # Sync queue
    max_items_per_run: int = 50
    sync_item_delay: float = 0.1  # seconds between processed items
    max_retries: int = 5
    failed_item_ttl_days: int = 7

    # Orchestration
    poll_interval: float = 10.0  # seconds between queue count polls
    reconnect_settle_delay: float = 2.0  # wait after reconnect before syncing
    probe_interval: float = 15.0  # seconds between health probes
    slow_rtt_ms: float = 1500.0  # RTT above this marks the link as slow

    # Storage limits
    max_total_mb: int = 100
    warning_threshold_mb: int = 80
    max_photo_kb: int = 500
    max_photos_per_order: int = 20
    cache_expiry_hours: int = 24

    # File paths
    data_dir: Path = Path("~/.local/share/fieldsync")
    db_name: str = "offline.db"

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None
    device_id: str | None = None

    @field_validator("max_items_per_run", "max_retries")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Ensure counts are at least 1."""
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("poll_interval", "probe_interval")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        """Ensure timer intervals are positive."""
        if v <= 0:
            raise ValueError("interval must be greater than 0 seconds")
        return v

    @field_validator("sync_item_delay", "reconnect_settle_delay")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        """Ensure delays are not negative."""
        if v < 0:
            raise ValueError("delay cannot be negative")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @cached_property
    def data_path(self) -> Path:
        """Return expanded data directory path."""
        return self.data_dir.expanduser()

    @cached_property
    def database_path(self) -> Path:
        """Return the path of the local SQLite database."""
        return self.data_path / self.db_name
