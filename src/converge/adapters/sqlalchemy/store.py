"""State store persisting snapshots and locks through SQLAlchemy.

Every write inserts a new ``(key, serial)`` row. The primary key makes two
concurrent writers of the same serial collide, so a write is a CAS even when
both passed the serial check; the losing commit surfaces as ``ConflictError``.
Readers only ever load a committed row, which holds a complete snapshot.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from converge.domain.errors import ConflictError, LockError
from converge.domain.model import Lock
from converge.domain.ports import check_write

from .mappings import LockRecord, StateRecord
from .unit_of_work import SqlAlchemyStateUnitOfWork

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import timedelta

    from converge.domain.model import StateSnapshot

    UnitOfWorkFactory = Callable[[], SqlAlchemyStateUnitOfWork]

log = getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.2


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class SqlAlchemyStateStore:
    """Database-backed state store; call ``unit_of_work.startup()`` first.

    ``history_limit`` bounds how many snapshots per key are kept (``None``
    keeps all of them).
    """

    unit_of_work_factory: UnitOfWorkFactory = field(default=SqlAlchemyStateUnitOfWork)
    history_limit: int | None = None
    clock: Callable[[], datetime] = _utcnow

    def get(self, key: str) -> StateSnapshot | None:
        with self.unit_of_work_factory() as uow:
            record = uow.repositories.states.latest(key)
            return record.snapshot if record is not None else None

    def history(self, key: str) -> list[StateSnapshot]:
        with self.unit_of_work_factory() as uow:
            return [record.snapshot for record in uow.repositories.states.history(key)]

    def write(self, key: str, snapshot: StateSnapshot, *, expected_serial: int | None) -> None:
        with self.unit_of_work_factory() as uow:
            latest = uow.repositories.states.latest_serial(key)
            check_write(
                key,
                snapshot,
                expected_serial=expected_serial,
                actual_serial=latest[0] if latest is not None else None,
                actual_lineage=latest[1] if latest is not None else None,
            )
            uow.repositories.states.add(
                StateRecord.of(key, snapshot.copy(), written_at=self.clock())
            )
            try:
                uow.commit()
            except IntegrityError as exc:
                raise ConflictError(
                    f"Concurrent write to state {key} at serial {snapshot.serial}",
                    key=key,
                    expected_serial=expected_serial,
                ) from exc
            if self.history_limit is not None:
                pruned = uow.repositories.states.prune(key, keep=self.history_limit)
                uow.commit()
                if pruned:
                    log.debug("Pruned %s old snapshot(s) of %s", pruned, key)
        log.debug("Stored state %s serial %s", key, snapshot.serial)

    def lock(
        self,
        key: str,
        *,
        holder: str,
        operation: str,
        ttl: timedelta,
        timeout: float = 0.0,
    ) -> Lock:
        give_up_at = time.monotonic() + max(0.0, timeout)
        while True:
            acquired, current = self._try_lock(key, holder=holder, operation=operation, ttl=ttl)
            if acquired is not None:
                log.debug("Locked %s for %s (%s)", key, holder, operation)
                return acquired
            remaining = give_up_at - time.monotonic()
            if remaining <= 0:
                detail = (
                    f" by {current.holder} ({current.operation}) since "
                    f"{current.acquired_at.isoformat()}"
                    if current is not None
                    else ""
                )
                raise LockError(f"State {key} is locked{detail}", key=key, held_by=current)
            time.sleep(min(_POLL_INTERVAL_SECONDS, remaining))

    def refresh_lock(self, lock: Lock) -> Lock:
        with self.unit_of_work_factory() as uow:
            record = self._held(uow.repositories.locks.get(lock.key), lock)
            record.acquired_at = self.clock()
            uow.commit()
            return record.to_lock()

    def unlock(self, lock: Lock) -> None:
        with self.unit_of_work_factory() as uow:
            record = self._held(uow.repositories.locks.get(lock.key), lock)
            uow.repositories.locks.remove(record)
            uow.commit()
        log.debug("Unlocked %s", lock.key)

    def force_unlock(self, key: str, lock_id: str | None = None) -> Lock | None:
        with self.unit_of_work_factory() as uow:
            record = uow.repositories.locks.get(key)
            if record is None:
                return None
            current = record.to_lock()
            if lock_id is not None and record.lock_id != lock_id:
                raise LockError(
                    f"Lock on {key} has id {record.lock_id}, not {lock_id}",
                    key=key,
                    held_by=current,
                )
            uow.repositories.locks.remove(record)
            uow.commit()
            return current

    def current_lock(self, key: str) -> Lock | None:
        with self.unit_of_work_factory() as uow:
            record = uow.repositories.locks.get(key)
            return record.to_lock() if record is not None else None

    def _try_lock(
        self, key: str, *, holder: str, operation: str, ttl: timedelta
    ) -> tuple[Lock | None, Lock | None]:
        with self.unit_of_work_factory() as uow:
            locks = uow.repositories.locks
            now = self.clock()
            record = locks.get(key)
            if record is not None:
                current = record.to_lock()
                if not current.is_expired(now):
                    return None, current
                log.warning(
                    "Breaking expired lock %s on %s held by %s",
                    current.lock_id,
                    key,
                    current.holder,
                )
                locks.remove(record)
                uow.session.flush()
            acquired = Lock(
                key=key,
                lock_id=uuid.uuid4().hex,
                holder=holder,
                operation=operation,
                acquired_at=now,
                ttl=ttl,
            )
            locks.add(LockRecord.of(acquired))
            try:
                uow.commit()
            except IntegrityError:
                # somebody else took it between our read and our insert
                return None, None
            return acquired, None

    @staticmethod
    def _held(record: LockRecord | None, lock: Lock) -> LockRecord:
        if record is None or record.lock_id != lock.lock_id:
            raise LockError(
                f"Lock {lock.lock_id} on {lock.key} is no longer held",
                key=lock.key,
                held_by=record.to_lock() if record is not None else None,
            )
        return record
