"""SQLAlchemy mapping metadata for persisted state and locks."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import cache
from typing import TYPE_CHECKING

from sqlalchemy import (
    Column,
    DateTime,
    Dialect,
    Float,
    Integer,
    String,
    Table,
    Text,
    TypeDecorator,
    Uuid,
    orm,
)

from converge.adapters.documents import dump_snapshot, load_snapshot
from converge.domain.model import Lock, StateSnapshot

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)

UUIDColumnType = Uuid[uuid.UUID]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timestamps go in as UTC; naive values read back from SQLite are tagged UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        aware = _as_utc(value)
        return None if aware is None else aware.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        return _as_utc(value)


class SnapshotPayload(TypeDecorator[StateSnapshot]):
    """Store a whole snapshot as one JSON document."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: StateSnapshot | None, dialect: Dialect) -> str | None:
        return None if value is None else dump_snapshot(value)

    def process_result_value(self, value: str | None, dialect: Dialect) -> StateSnapshot | None:
        return None if value is None else load_snapshot(value)


@dataclass(eq=False)
class StateRecord:
    """One stored snapshot; (key, serial) is unique, which makes writes a CAS."""

    key: str
    serial: int
    lineage: uuid.UUID
    snapshot: StateSnapshot
    written_at: datetime

    @classmethod
    def of(cls, key: str, snapshot: StateSnapshot, *, written_at: datetime) -> StateRecord:
        return cls(
            key=key,
            serial=snapshot.serial,
            lineage=snapshot.lineage,
            snapshot=snapshot,
            written_at=written_at,
        )


@dataclass(eq=False)
class LockRecord:
    key: str
    lock_id: str
    holder: str
    operation: str
    acquired_at: datetime
    ttl_seconds: float

    @classmethod
    def of(cls, lock: Lock) -> LockRecord:
        return cls(
            key=lock.key,
            lock_id=lock.lock_id,
            holder=lock.holder,
            operation=lock.operation,
            acquired_at=lock.acquired_at,
            ttl_seconds=lock.ttl.total_seconds(),
        )

    def to_lock(self) -> Lock:
        return Lock(
            key=self.key,
            lock_id=self.lock_id,
            holder=self.holder,
            operation=self.operation,
            acquired_at=self.acquired_at,
            ttl=timedelta(seconds=self.ttl_seconds),
        )


mapper_registry = orm.registry()
mapper_registry.metadata.naming_convention = {"pk": "pk_%(table_name)s"}

state_snapshot_table = Table(
    "state_snapshot",
    mapper_registry.metadata,
    Column("key", String(255), primary_key=True),
    Column("serial", Integer, primary_key=True, autoincrement=False),
    Column("lineage", UUIDColumnType, nullable=False),
    Column("snapshot", SnapshotPayload, nullable=False),
    Column("written_at", UTCDateTime, nullable=False),
)

state_lock_table = Table(
    "state_lock",
    mapper_registry.metadata,
    Column("key", String(255), primary_key=True),
    Column("lock_id", String(64), nullable=False),
    Column("holder", String(255), nullable=False),
    Column("operation", String(64), nullable=False),
    Column("acquired_at", UTCDateTime, nullable=False),
    Column("ttl_seconds", Float, nullable=False),
)


@cache
def start_mappers() -> orm.registry:
    """Map the record classes onto their tables (idempotent)."""

    mapper_registry.map_imperatively(StateRecord, state_snapshot_table)
    mapper_registry.map_imperatively(LockRecord, state_lock_table)
    orm.configure_mappers()
    return mapper_registry


def create_all_tables(engine: Engine) -> None:
    """Create the tables straight from metadata, bypassing Alembic."""

    log.info("Creating state tables without migrations")
    mapper_registry.metadata.create_all(engine)
