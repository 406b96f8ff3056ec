"""State store port: versioned, lockable snapshot persistence."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from converge.domain.errors import ConflictError

if TYPE_CHECKING:
    from datetime import timedelta
    from uuid import UUID

    from converge.domain.model import Lock, StateSnapshot


@runtime_checkable
class StateStore(Protocol):
    """Persistence contract for state snapshots.

    - ``write`` is a compare-and-swap: it succeeds only while the stored serial
      still equals ``expected_serial`` (``None`` meaning "nothing stored yet")
      and the lineage matches, otherwise it raises ``ConflictError``.
    - A snapshot becomes visible atomically; readers never observe a partial one.
    - Locks are advisory and bounded by ``ttl``; an expired lock is treated as
      stale and may be taken over. ``force_unlock`` is the manual escape hatch.
    """

    def get(self, key: str) -> StateSnapshot | None: ...

    def write(self, key: str, snapshot: StateSnapshot, *, expected_serial: int | None) -> None: ...

    def lock(
        self,
        key: str,
        *,
        holder: str,
        operation: str,
        ttl: timedelta,
        timeout: float = 0.0,
    ) -> Lock:
        """Acquire the lock or raise ``LockError`` once ``timeout`` seconds passed."""
        ...

    def refresh_lock(self, lock: Lock) -> Lock: ...

    def unlock(self, lock: Lock) -> None: ...

    def force_unlock(self, key: str, lock_id: str | None = None) -> Lock | None:
        """Break the lock on ``key`` (only if it has ``lock_id`` when given)."""
        ...

    def current_lock(self, key: str) -> Lock | None: ...


def check_write(
    key: str,
    snapshot: StateSnapshot,
    *,
    expected_serial: int | None,
    actual_serial: int | None,
    actual_lineage: UUID | None,
) -> None:
    """Raise ``ConflictError`` unless ``snapshot`` may replace the stored one.

    Shared by store implementations: the stored serial must equal
    ``expected_serial``, the lineage must match and the serial must grow.
    """

    if actual_serial != expected_serial:
        raise ConflictError(
            f"State {key} is at serial {actual_serial}, expected {expected_serial}",
            key=key,
            expected_serial=expected_serial,
            actual_serial=actual_serial,
        )
    if actual_serial is None:
        return
    if actual_lineage != snapshot.lineage:
        raise ConflictError(
            f"State {key} belongs to lineage {actual_lineage}, not {snapshot.lineage}",
            key=key,
            expected_serial=expected_serial,
            actual_serial=actual_serial,
        )
    if snapshot.serial <= actual_serial:
        raise ConflictError(
            f"Serial of state {key} must increase (stored {actual_serial}, "
            f"written {snapshot.serial})",
            key=key,
            expected_serial=expected_serial,
            actual_serial=actual_serial,
        )
