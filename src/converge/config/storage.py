"""Location and connection settings of the state database."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from .env import env_value, parse_flag
from .errors import ConfigurationError

APP_DIR_NAME: Final[str] = "converge"
DEFAULT_DB_FILENAME: Final[str] = "converge.db"
DEFAULT_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Local data directory used when no ``DATABASE_URI`` is configured."""

    data_dir: Path
    database_filename: str = DEFAULT_DB_FILENAME

    def resolve_data_dir(self) -> Path:
        return self.data_dir.expanduser().resolve()

    def database_uri(self) -> str:
        data_dir = self.resolve_data_dir()
        data_dir.mkdir(parents=True, exist_ok=True)
        return f"sqlite+pysqlite:///{data_dir / self.database_filename}"


@dataclass(frozen=True, slots=True)
class DatabaseConfig:
    """Connection settings of the state database.

    ``history_limit`` bounds the snapshots kept per workspace (``None`` keeps
    all of them). ``busy_timeout`` is how long SQLite waits on a competing
    writer before giving up.
    """

    uri: str
    history_limit: int | None = None
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS
    echo: bool = False

    def __post_init__(self) -> None:
        if self.history_limit is not None and self.history_limit < 1:
            raise ConfigurationError(
                "CONVERGE_STATE_HISTORY must be at least 1", setting="CONVERGE_STATE_HISTORY"
            )

    @property
    def is_sqlite(self) -> bool:
        return self.uri.startswith("sqlite")


def default_data_dir() -> Path:
    if os.name == "nt":
        root = os.getenv("LOCALAPPDATA")
        base = Path(root) if root else Path.home() / "AppData" / "Local"
    else:
        root = os.getenv("XDG_DATA_HOME")
        base = Path(root) if root else Path.home() / ".local" / "share"
    return (base / APP_DIR_NAME).expanduser().resolve()


def get_storage_config() -> StorageConfig:
    return StorageConfig(data_dir=env_value("CONVERGE_DATA_DIR", Path, default_data_dir()))


def get_database_config(
    *, storage: StorageConfig | None = None, uri: str | None = None
) -> DatabaseConfig:
    """Resolve the database from ``uri``, then ``DATABASE_URI``, then the data dir."""

    resolved = uri or env_value("DATABASE_URI", str, None)
    if resolved is None:
        resolved = (storage or get_storage_config()).database_uri()
    return DatabaseConfig(
        uri=resolved,
        history_limit=env_value("CONVERGE_STATE_HISTORY", int, None),
        busy_timeout=env_value(
            "CONVERGE_DB_BUSY_TIMEOUT", float, DEFAULT_BUSY_TIMEOUT_SECONDS
        ),
        echo=env_value("CONVERGE_SQL_ECHO", parse_flag, False),
    )
