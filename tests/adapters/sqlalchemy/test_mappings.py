from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, inspect, select

from converge.adapters.sqlalchemy import LockRecord, create_all_tables, start_mappers
from converge.adapters.sqlalchemy.mappings import state_lock_table, state_snapshot_table
from converge.adapters.sqlalchemy.migrations import current_revision, head_revision, upgrade_head
from converge.domain.model import Lock

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def test_start_mappers_is_idempotent() -> None:
    # First invocation happens in the sqlite_engine fixture; calling again should be harmless.
    start_mappers()
    start_mappers()


def test_create_all_tables_matches_the_migrations(sqlite_engine: Engine) -> None:
    fresh = create_engine("sqlite+pysqlite:///:memory:", future=True)
    create_all_tables(fresh)

    migrated = inspect(sqlite_engine)
    created = inspect(fresh)
    for table in ("state_snapshot", "state_lock"):
        assert table in migrated.get_table_names()
        assert [column["name"] for column in migrated.get_columns(table)] == [
            column["name"] for column in created.get_columns(table)
        ]
        assert migrated.get_pk_constraint(table)["constrained_columns"] == (
            created.get_pk_constraint(table)["constrained_columns"]
        )
    fresh.dispose()


def test_tables_are_keyed_for_compare_and_swap(sqlite_engine: Engine) -> None:
    assert [column.name for column in state_snapshot_table.primary_key.columns] == [
        "key",
        "serial",
    ]
    assert [column.name for column in state_lock_table.primary_key.columns] == ["key"]
    with sqlite_engine.connect() as connection:
        assert connection.execute(select(state_snapshot_table)).all() == []


def test_lock_record_round_trips_a_lock() -> None:
    lock = Lock(
        key="workspace",
        lock_id="abc",
        holder="alice@laptop",
        operation="apply",
        acquired_at=datetime(2026, 1, 1, tzinfo=UTC),
        ttl=timedelta(minutes=15),
    )

    assert LockRecord.of(lock).to_lock() == lock


def test_upgrading_a_current_schema_is_a_no_op(sqlite_engine: Engine) -> None:
    assert head_revision() is not None
    assert current_revision(sqlite_engine) == head_revision()

    upgrade_head(engine=sqlite_engine)

    assert current_revision(sqlite_engine) == head_revision()
