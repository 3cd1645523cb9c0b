"""fieldsync configuration module.

Provides centralized configuration management using pydantic-settings.

Usage:
    from fieldsync.config import get_settings

    settings = get_settings()
    print(settings.poll_interval)
    print(settings.database_path)
"""

from functools import lru_cache

from fieldsync.config.settings import Settings

__all__ = ["Settings", "get_settings"]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns a singleton Settings instance that is cached for the lifetime
    of the process. To reload settings, call get_settings.cache_clear() first.

    Returns:
        Settings instance loaded from environment variables.
    """
    return Settings()
