"""Application configuration helpers."""

from __future__ import annotations

from .engine import EngineConfig, get_engine_config
from .env import env_value, parse_flag, require_env_vars
from .errors import ConfigurationError, MissingConfigurationError
from .http_provider import DEFAULT_TRANSIENT_STATUSES, HttpProviderConfig, RateLimit
from .logging import configure_logging
from .storage import DatabaseConfig, StorageConfig, get_database_config, get_storage_config

__all__ = [
    "DEFAULT_TRANSIENT_STATUSES",
    "ConfigurationError",
    "DatabaseConfig",
    "EngineConfig",
    "HttpProviderConfig",
    "MissingConfigurationError",
    "RateLimit",
    "StorageConfig",
    "configure_logging",
    "env_value",
    "get_database_config",
    "get_engine_config",
    "get_storage_config",
    "parse_flag",
    "require_env_vars",
]
