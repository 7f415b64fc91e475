# ============================================================================
# STREET PATROL LOG - Configuration Management
# ============================================================================
# Environment-backed configuration with type casting and defaults.
# Every key can be overridden with a PATROL_<KEY> environment variable.
# ============================================================================

import logging
import os
from datetime import datetime
from typing import Any, Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("patrols.config")

LONDON = ZoneInfo("Europe/London")

ENV_PREFIX = "PATROL_"

# key -> (default, value_type, category)
DEFAULT_CONFIG = {
    # Storage
    "db_path": ("patrols.db", "string", "storage"),
    "export_dir": ("artifacts/reports", "string", "storage"),

    # Auth
    "session_secret": ("street-patrol-dev-secret", "string", "auth"),
    "password_min_length": (6, "int", "auth"),
    "bcrypt_rounds": (12, "int", "auth"),

    # General
    "timezone": ("Europe/London", "string", "general"),
    "log_level": ("INFO", "string", "general"),

    # History list
    "notes_preview_length": (300, "int", "history"),

    # Session controller
    "patrol_cache_size": (256, "int", "patrols"),
}


class AppConfig:
    """
    Configuration manager for the patrol log.

    Values resolve in order: explicit set() override, environment variable,
    then the DEFAULT_CONFIG default.
    """

    _cache: Dict[str, Any] = {}
    _cache_loaded: bool = False

    @classmethod
    def _load_cache(cls):
        if cls._cache_loaded:
            return

        for key, (default, vtype, category) in DEFAULT_CONFIG.items():
            raw = os.environ.get(ENV_PREFIX + key.upper())
            if raw is None:
                cls._cache[key] = default
            else:
                cls._cache[key] = cls._cast_value(raw, vtype, default)

        cls._cache_loaded = True

    @classmethod
    def _cast_value(cls, value: str, value_type: str, default: Any = None) -> Any:
        """Cast string value to appropriate type."""
        if value is None:
            return default
        if value_type == "int":
            try:
                return int(value)
            except ValueError:
                logger.warning("Invalid integer %r for config, using default %r", value, default)
                return default
        return value

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        cls._load_cache()
        return cls._cache.get(key, default)

    @classmethod
    def set(cls, key: str, value: Any):
        """Override a configuration value for the life of the process."""
        cls._load_cache()
        old_value = cls._cache.get(key)
        cls._cache[key] = value
        if old_value != value:
            logger.info("Config %s changed", key)

    @classmethod
    def get_all(cls, category: str = None) -> Dict[str, Any]:
        """Get all configuration values, optionally filtered by category."""
        cls._load_cache()

        if category is None:
            return dict(cls._cache)

        result = {}
        for key, (default, vtype, cat) in DEFAULT_CONFIG.items():
            if cat == category:
                result[key] = cls._cache.get(key, default)
        return result

    @classmethod
    def reset_cache(cls):
        """Drop overrides and re-read the environment on next access."""
        cls._cache = {}
        cls._cache_loaded = False


# Convenience functions
def get_config(key: str, default: Any = None) -> Any:
    """Get a configuration value."""
    return AppConfig.get(key, default)


def set_config(key: str, value: Any):
    """Set a configuration value."""
    AppConfig.set(key, value)


# ============================================================================
# Timezone Helpers
# ============================================================================

def get_timezone():
    """Get the configured timezone object."""
    tz_name = get_config("timezone", "Europe/London")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to Europe/London", tz_name)
        return LONDON


def get_local_now() -> datetime:
    """Current wall-clock time in the configured timezone, as a naive datetime.

    Patrol start times are entered as local wall-clock values, so every
    comparison against them is made naive.
    """
    return datetime.now(get_timezone()).replace(tzinfo=None)
