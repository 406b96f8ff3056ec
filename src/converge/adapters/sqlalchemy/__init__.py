"""SQLAlchemy adapter package for converge."""

from __future__ import annotations

from .mappings import (
    LockRecord,
    StateRecord,
    create_all_tables,
    mapper_registry,
    start_mappers,
)
from .repositories import SqlAlchemyLockRepository, SqlAlchemyStateRepository
from .store import SqlAlchemyStateStore
from .unit_of_work import (
    SqlAlchemyStateUnitOfWork,
    StartupError,
    shutdown,
    startup,
)

__all__ = [
    "LockRecord",
    "SqlAlchemyLockRepository",
    "SqlAlchemyStateRepository",
    "SqlAlchemyStateStore",
    "SqlAlchemyStateUnitOfWork",
    "StartupError",
    "StateRecord",
    "create_all_tables",
    "mapper_registry",
    "shutdown",
    "start_mappers",
    "startup",
]
