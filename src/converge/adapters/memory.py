"""Process-local state store, used for previews and tests."""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING

from converge.domain.errors import LockError
from converge.domain.model import Lock
from converge.domain.ports import check_write

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import timedelta

    from converge.domain.model import StateSnapshot

log = getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.05


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class InMemoryStateStore:
    """Dict-backed store with the same CAS and lock semantics as the database store.

    ``history_limit`` bounds the snapshots kept per key (``None`` keeps all).
    """

    clock: Callable[[], datetime] = _utcnow
    history_limit: int | None = None
    _snapshots: dict[str, StateSnapshot] = field(default_factory=dict, repr=False)
    _history: dict[str, list[StateSnapshot]] = field(default_factory=dict, repr=False)
    _locks: dict[str, Lock] = field(default_factory=dict, repr=False)
    _mutex: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def get(self, key: str) -> StateSnapshot | None:
        with self._mutex:
            stored = self._snapshots.get(key)
            return stored.copy() if stored is not None else None

    def history(self, key: str) -> list[StateSnapshot]:
        with self._mutex:
            return [snapshot.copy() for snapshot in self._history.get(key, [])]

    def write(self, key: str, snapshot: StateSnapshot, *, expected_serial: int | None) -> None:
        with self._mutex:
            stored = self._snapshots.get(key)
            check_write(
                key,
                snapshot,
                expected_serial=expected_serial,
                actual_serial=stored.serial if stored is not None else None,
                actual_lineage=stored.lineage if stored is not None else None,
            )
            stored = snapshot.copy()
            self._snapshots[key] = stored
            history = self._history.setdefault(key, [])
            history.append(stored)
            if self.history_limit is not None:
                del history[: max(0, len(history) - self.history_limit)]
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
            with self._mutex:
                current = self._locks.get(key)
                now = self.clock()
                if current is not None and current.is_expired(now):
                    log.warning(
                        "Breaking expired lock %s on %s held by %s",
                        current.lock_id,
                        key,
                        current.holder,
                    )
                    current = None
                if current is None:
                    acquired = Lock(
                        key=key,
                        lock_id=uuid.uuid4().hex,
                        holder=holder,
                        operation=operation,
                        acquired_at=now,
                        ttl=ttl,
                    )
                    self._locks[key] = acquired
                    log.debug("Locked %s for %s (%s)", key, holder, operation)
                    return acquired
            remaining = give_up_at - time.monotonic()
            if remaining <= 0:
                raise LockError(
                    f"State {key} is locked by {current.holder} ({current.operation}) "
                    f"since {current.acquired_at.isoformat()}",
                    key=key,
                    held_by=current,
                )
            time.sleep(min(_POLL_INTERVAL_SECONDS, remaining))

    def refresh_lock(self, lock: Lock) -> Lock:
        with self._mutex:
            self._require_holder(lock)
            renewed = lock.renewed(self.clock())
            self._locks[lock.key] = renewed
            return renewed

    def unlock(self, lock: Lock) -> None:
        with self._mutex:
            self._require_holder(lock)
            del self._locks[lock.key]
        log.debug("Unlocked %s", lock.key)

    def force_unlock(self, key: str, lock_id: str | None = None) -> Lock | None:
        with self._mutex:
            current = self._locks.get(key)
            if current is None:
                return None
            if lock_id is not None and current.lock_id != lock_id:
                raise LockError(
                    f"Lock on {key} has id {current.lock_id}, not {lock_id}",
                    key=key,
                    held_by=current,
                )
            del self._locks[key]
            return current

    def current_lock(self, key: str) -> Lock | None:
        with self._mutex:
            return self._locks.get(key)

    def _require_holder(self, lock: Lock) -> None:
        current = self._locks.get(lock.key)
        if current is None or current.lock_id != lock.lock_id:
            raise LockError(
                f"Lock {lock.lock_id} on {lock.key} is no longer held",
                key=lock.key,
                held_by=current,
            )
