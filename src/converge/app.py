"""Application orchestration entry points."""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

from converge.adapters.declarations import read_declarations
from converge.adapters.memory import InMemoryStateStore
from converge.adapters.sqlalchemy import SqlAlchemyStateStore
from converge.adapters.sqlalchemy.unit_of_work import is_started, startup
from converge.config import get_database_config, get_engine_config
from converge.domain.model import Configuration
from converge.domain.ports import ProviderRegistry
from converge.domain.reconciliation import ReconciliationEngine, RetryPolicy

if TYPE_CHECKING:
    from pathlib import Path

    from converge.config import EngineConfig
    from converge.domain.ports import StateStore


log = getLogger(__name__)


@dataclass(slots=True)
class Workspace:
    """An engine bound to one state key plus the configuration loaded for it."""

    engine: ReconciliationEngine
    configuration: Configuration = field(default_factory=Configuration)


def open_state_store(
    *,
    database_uri: str | None = None,
    in_memory: bool = False,
    history_limit: int | None = None,
) -> StateStore:
    """Return the configured state store, starting the database adapter if needed."""

    if in_memory:
        log.info("Using an in-memory state store; nothing will be persisted")
        return InMemoryStateStore()
    database = get_database_config(uri=database_uri)
    if not is_started():
        startup(database=database)
    return SqlAlchemyStateStore(
        history_limit=history_limit if history_limit is not None else database.history_limit
    )


def build_engine(
    providers: ProviderRegistry,
    *,
    store: StateStore,
    config: EngineConfig | None = None,
    workspace: str | None = None,
) -> ReconciliationEngine:
    effective = config or get_engine_config()
    return ReconciliationEngine(
        store=store,
        providers=providers,
        workspace=workspace or effective.workspace,
        parallelism=effective.parallelism,
        retry=RetryPolicy(
            max_attempts=effective.max_attempts,
            backoff_factor=effective.backoff_factor,
            max_backoff=effective.max_backoff,
        ),
        change_timeout=effective.change_timeout,
        deadline=effective.run_deadline,
        lock_ttl=effective.lock_ttl,
        lock_timeout=effective.lock_timeout,
    )


def open_workspace(
    declarations: Path | None,
    *,
    store: StateStore | None = None,
    config: EngineConfig | None = None,
    workspace: str | None = None,
    database_uri: str | None = None,
) -> Workspace:
    """Load ``declarations`` (if given) and build an engine over the state store.

    Without declarations the engine has no providers, which is enough for
    state inspection and editing commands.
    """

    effective_store = store if store is not None else open_state_store(database_uri=database_uri)
    if declarations is None:
        engine = build_engine(
            ProviderRegistry(), store=effective_store, config=config, workspace=workspace
        )
        return Workspace(engine=engine)

    loaded = read_declarations(declarations)
    engine = build_engine(
        loaded.providers, store=effective_store, config=config, workspace=workspace
    )
    log.info(
        "Opened workspace %s with %s declaration(s) from %s",
        engine.workspace,
        len(loaded.configuration.resources),
        declarations,
    )
    return Workspace(engine=engine, configuration=loaded.configuration)
