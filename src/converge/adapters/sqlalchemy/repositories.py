"""Repository implementations backed by SQLAlchemy sessions."""

from __future__ import annotations

from typing import TYPE_CHECKING, cast

from sqlalchemy import delete, select

from converge.adapters.sqlalchemy.mappings import (
    LockRecord,
    StateRecord,
    state_snapshot_table,
)

if TYPE_CHECKING:
    from uuid import UUID

    from sqlalchemy.orm import Session


class SqlAlchemyStateRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, record: StateRecord) -> None:
        self.session.add(record)

    def latest(self, key: str) -> StateRecord | None:
        stmt = (
            select(StateRecord)
            .where(state_snapshot_table.c.key == key)
            .order_by(state_snapshot_table.c.serial.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def latest_serial(self, key: str) -> tuple[int, UUID] | None:
        stmt = (
            select(state_snapshot_table.c.serial, state_snapshot_table.c.lineage)
            .where(state_snapshot_table.c.key == key)
            .order_by(state_snapshot_table.c.serial.desc())
            .limit(1)
        )
        row = self.session.execute(stmt).first()
        if row is None:
            return None
        return cast("int", row[0]), cast("UUID", row[1])

    def history(self, key: str) -> list[StateRecord]:
        stmt = (
            select(StateRecord)
            .where(state_snapshot_table.c.key == key)
            .order_by(state_snapshot_table.c.serial)
        )
        return list(self.session.execute(stmt).scalars())

    def prune(self, key: str, *, keep: int) -> int:
        """Delete all but the newest ``keep`` snapshots of ``key``."""

        cutoff_stmt = (
            select(state_snapshot_table.c.serial)
            .where(state_snapshot_table.c.key == key)
            .order_by(state_snapshot_table.c.serial.desc())
            .offset(keep)
            .limit(1)
        )
        cutoff = self.session.execute(cutoff_stmt).scalar_one_or_none()
        if cutoff is None:
            return 0
        result = self.session.execute(
            delete(state_snapshot_table)
            .where(state_snapshot_table.c.key == key)
            .where(state_snapshot_table.c.serial <= cutoff)
        )
        return int(getattr(result, "rowcount", 0) or 0)


class SqlAlchemyLockRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, key: str) -> LockRecord | None:
        return self.session.get(LockRecord, key)

    def add(self, record: LockRecord) -> None:
        self.session.add(record)

    def remove(self, record: LockRecord) -> None:
        self.session.delete(record)
