"""
config.py - Configuration for the table_trace engine
"""
import os
from typing import Optional
from dataclasses import dataclass

from table_trace.correlation.correlator import CorrelationOptions
from table_trace.errors import ConfigurationError


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class TableTraceConfig:
    """Configuration for the table_trace engine"""

    # Limits
    max_events: int = 500  # Events kept in the in-memory log
    max_display_rows: int = 1000  # Rows fetched per watched table
    max_polling_rows: int = 10000
    polling_interval_ms: int = 1000

    # Correlation configuration
    correlation_window_ms: float = 100.0
    correlation_min_group_size: int = 2
    correlation_use_foreign_keys: bool = True

    # Snapshot configuration
    backend_uri: str = ":memory:"
    default_schema: Optional[str] = None  # Backend default when unset

    # Caching configuration
    enable_cache: bool = True
    cache_ttl: int = 300

    @classmethod
    def from_env(cls) -> 'TableTraceConfig':
        """Load configuration from environment variables"""
        config = cls()

        # Limits
        config.max_events = int(os.getenv('TABLE_TRACE_MAX_EVENTS', str(config.max_events)))
        config.max_display_rows = int(os.getenv('TABLE_TRACE_MAX_DISPLAY_ROWS', str(config.max_display_rows)))
        config.max_polling_rows = int(os.getenv('TABLE_TRACE_MAX_POLLING_ROWS', str(config.max_polling_rows)))
        config.polling_interval_ms = int(os.getenv('TABLE_TRACE_POLLING_INTERVAL_MS', str(config.polling_interval_ms)))

        # Correlation settings
        config.correlation_window_ms = float(os.getenv('TABLE_TRACE_WINDOW_MS', str(config.correlation_window_ms)))
        config.correlation_min_group_size = int(os.getenv('TABLE_TRACE_MIN_GROUP_SIZE', str(config.correlation_min_group_size)))
        config.correlation_use_foreign_keys = _env_bool('TABLE_TRACE_USE_FOREIGN_KEYS', config.correlation_use_foreign_keys)

        config.backend_uri = os.getenv('TABLE_TRACE_BACKEND_URI', config.backend_uri)
        config.default_schema = os.getenv('TABLE_TRACE_DEFAULT_SCHEMA') or config.default_schema

        # Cache settings
        config.enable_cache = _env_bool('TABLE_TRACE_ENABLE_CACHE', config.enable_cache)
        config.cache_ttl = int(os.getenv('TABLE_TRACE_CACHE_TTL', str(config.cache_ttl)))

        return config

    def validate(self) -> None:
        """Validate configuration settings"""
        errors = []

        if self.max_events <= 0:
            errors.append("max_events must be positive")

        if self.max_display_rows <= 0:
            errors.append("max_display_rows must be positive")

        if self.max_polling_rows <= 0:
            errors.append("max_polling_rows must be positive")

        if self.polling_interval_ms <= 0:
            errors.append("polling_interval_ms must be positive")

        if self.correlation_window_ms <= 0:
            errors.append("correlation_window_ms must be positive")

        if self.correlation_min_group_size < 2:
            errors.append("correlation_min_group_size must be at least 2")

        if self.cache_ttl <= 0:
            errors.append("cache_ttl must be positive")

        if errors:
            raise ConfigurationError(f"Configuration validation errors: {'; '.join(errors)}")

    def correlation_options(self) -> CorrelationOptions:
        """Build correlation options from the configured defaults"""
        return CorrelationOptions(
            window_ms=self.correlation_window_ms,
            min_group_size=self.correlation_min_group_size,
            use_foreign_keys=self.correlation_use_foreign_keys,
        )


class ConfigManager:
    """Manager for configuration loading and validation"""

    def __init__(self):
        self.config: Optional[TableTraceConfig] = None

    def load_config(self, config_source: Optional[str] = None) -> TableTraceConfig:
        """Load configuration from various sources"""
        if config_source == 'env':
            self.config = TableTraceConfig.from_env()
        else:
            self.config = TableTraceConfig()

        self.config.validate()
        return self.config

    def get_config(self) -> TableTraceConfig:
        """Get the loaded configuration"""
        if self.config is None:
            self.config = self.load_config()
        return self.config


# Global configuration manager
config_manager = ConfigManager()


def get_config() -> TableTraceConfig:
    """Get the global configuration"""
    return config_manager.get_config()
