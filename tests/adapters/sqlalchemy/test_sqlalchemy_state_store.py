from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from converge.adapters.sqlalchemy import (
    SqlAlchemyStateRepository,
    SqlAlchemyStateStore,
    shutdown,
    startup,
)
from converge.config import DatabaseConfig
from converge.domain.errors import ConflictError
from tests.helpers.state import managed, snapshot_of

if TYPE_CHECKING:
    from pathlib import Path

    from converge.domain.model import StateSnapshot


def written(store: SqlAlchemyStateStore, count: int) -> StateSnapshot:
    snapshot = snapshot_of(managed("network.main", id="id-network-1", name="main"))
    store.write("workspace", snapshot, expected_serial=None)
    for _ in range(count - 1):
        successor = snapshot.successor()
        store.write("workspace", successor, expected_serial=snapshot.serial)
        snapshot = successor
    return snapshot


def test_history_lists_every_serial(sqlite_state_store: SqlAlchemyStateStore) -> None:
    written(sqlite_state_store, 3)

    assert [item.serial for item in sqlite_state_store.history("workspace")] == [1, 2, 3]


def test_history_limit_prunes_old_snapshots(sqlite_state_store: SqlAlchemyStateStore) -> None:
    store = SqlAlchemyStateStore(history_limit=2)

    latest = written(store, 4)

    assert [item.serial for item in store.history("workspace")] == [3, 4]
    assert store.get("workspace") == latest


def test_racing_writers_collide_on_the_serial(
    sqlite_state_store: SqlAlchemyStateStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    first = written(sqlite_state_store, 1)
    # a writer that read the state before the first write landed
    monkeypatch.setattr(SqlAlchemyStateRepository, "latest_serial", lambda self, key: None)

    with pytest.raises(ConflictError, match="Concurrent write"):
        sqlite_state_store.write("workspace", first.copy(), expected_serial=None)

    monkeypatch.undo()
    assert sqlite_state_store.get("workspace") == first


def test_state_survives_a_restart(tmp_path: Path) -> None:
    uri = f"sqlite+pysqlite:///{tmp_path / 'state.db'}"
    startup(database=DatabaseConfig(uri=uri), force=True)
    try:
        snapshot = written(SqlAlchemyStateStore(), 2)
    finally:
        shutdown()

    startup(database=DatabaseConfig(uri=uri), force=True)
    try:
        assert SqlAlchemyStateStore().get("workspace") == snapshot
    finally:
        shutdown()
