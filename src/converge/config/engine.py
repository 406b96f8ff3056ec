"""Reconciliation engine tuning values."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Final

from .env import env_value
from .errors import ConfigurationError

DEFAULT_WORKSPACE: Final[str] = "default"
DEFAULT_PARALLELISM: Final[int] = 10
DEFAULT_MAX_ATTEMPTS: Final[int] = 4
DEFAULT_BACKOFF_FACTOR: Final[float] = 0.5
DEFAULT_MAX_BACKOFF: Final[float] = 30.0
DEFAULT_LOCK_TTL_SECONDS: Final[float] = 900.0


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Holds scheduling, retry and locking settings for one workspace."""

    workspace: str = DEFAULT_WORKSPACE
    parallelism: int = DEFAULT_PARALLELISM
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    max_backoff: float = DEFAULT_MAX_BACKOFF
    change_timeout: float | None = None
    run_deadline: float | None = None
    lock_ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS
    lock_timeout: float = 0.0

    def __post_init__(self) -> None:
        if self.parallelism < 1:
            raise ConfigurationError(
                "CONVERGE_PARALLELISM must be at least 1", setting="CONVERGE_PARALLELISM"
            )
        if self.max_attempts < 1:
            raise ConfigurationError(
                "CONVERGE_MAX_ATTEMPTS must be at least 1", setting="CONVERGE_MAX_ATTEMPTS"
            )
        if self.lock_ttl_seconds <= 0:
            raise ConfigurationError(
                "CONVERGE_LOCK_TTL must be positive", setting="CONVERGE_LOCK_TTL"
            )

    @property
    def lock_ttl(self) -> timedelta:
        return timedelta(seconds=self.lock_ttl_seconds)


def get_engine_config() -> EngineConfig:
    return EngineConfig(
        workspace=env_value("CONVERGE_WORKSPACE", str, DEFAULT_WORKSPACE),
        parallelism=env_value("CONVERGE_PARALLELISM", int, DEFAULT_PARALLELISM),
        max_attempts=env_value("CONVERGE_MAX_ATTEMPTS", int, DEFAULT_MAX_ATTEMPTS),
        backoff_factor=env_value("CONVERGE_BACKOFF_FACTOR", float, DEFAULT_BACKOFF_FACTOR),
        max_backoff=env_value("CONVERGE_MAX_BACKOFF", float, DEFAULT_MAX_BACKOFF),
        change_timeout=env_value("CONVERGE_CHANGE_TIMEOUT", float, None),
        run_deadline=env_value("CONVERGE_RUN_DEADLINE", float, None),
        lock_ttl_seconds=env_value("CONVERGE_LOCK_TTL", float, DEFAULT_LOCK_TTL_SECONDS),
        lock_timeout=env_value("CONVERGE_LOCK_TIMEOUT", float, 0.0),
    )
