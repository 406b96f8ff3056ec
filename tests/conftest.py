from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine  # noqa: TC002

from converge.adapters.memory import InMemoryStateStore
from converge.adapters.sqlalchemy import SqlAlchemyStateStore, start_mappers
from converge.adapters.sqlalchemy.migrations import upgrade_head
from converge.adapters.sqlalchemy.unit_of_work import shutdown, startup
from converge.domain.reconciliation import ReconciliationEngine, RetryPolicy
from tests.helpers.providers import (
    FakeProvider,
    World,
    make_registry,
    network_schema,
    server_schema,
)

os.environ.setdefault("DATABASE_URI", "sqlite+pysqlite:///:memory:")

if TYPE_CHECKING:
    from collections.abc import Iterator

    from converge.domain.ports import ProviderRegistry


FAST_RETRY = RetryPolicy(max_attempts=3, backoff_factor=0.0, max_backoff=0.0, jitter=0.0)


@pytest.fixture
def world() -> World:
    return World()


@pytest.fixture
def networks(world: World) -> FakeProvider:
    return FakeProvider(network_schema(), world=world)


@pytest.fixture
def servers(world: World) -> FakeProvider:
    return FakeProvider(server_schema(), world=world)


@pytest.fixture
def providers(networks: FakeProvider, servers: FakeProvider) -> ProviderRegistry:
    return make_registry(networks, servers)


@pytest.fixture
def memory_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def engine(memory_store: InMemoryStateStore, providers: ProviderRegistry) -> ReconciliationEngine:
    return ReconciliationEngine(
        store=memory_store,
        providers=providers,
        workspace="test",
        retry=FAST_RETRY,
        holder="tester@localhost",
    )


@pytest.fixture
def sqlite_engine() -> Iterator[Engine]:
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    start_mappers()
    upgrade_head(engine=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def sqlite_state_store(sqlite_engine: Engine) -> Iterator[SqlAlchemyStateStore]:
    startup(engine=sqlite_engine, force=True)
    try:
        yield SqlAlchemyStateStore()
    finally:
        shutdown()
