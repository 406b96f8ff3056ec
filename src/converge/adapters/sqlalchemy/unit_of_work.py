"""Process-wide database engine and the unit of work over the state tables."""

from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import TYPE_CHECKING, Literal, Self

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from converge.adapters.sqlalchemy.mappings import start_mappers
from converge.adapters.sqlalchemy.migrations import upgrade_head
from converge.adapters.sqlalchemy.repositories import (
    SqlAlchemyLockRepository,
    SqlAlchemyStateRepository,
)
from converge.config import get_database_config

if TYPE_CHECKING:
    from types import TracebackType

    from sqlalchemy.engine import Engine

    from converge.config import DatabaseConfig


log = getLogger(__name__)


class StartupError(RuntimeError):
    """The database adapter is used before ``startup()`` or reconfigured implicitly."""


@dataclass(frozen=True, slots=True)
class StateRepositories:
    states: SqlAlchemyStateRepository
    locks: SqlAlchemyLockRepository


@dataclass(slots=True)
class _AdapterState:
    engine: Engine | None = None
    session_factory: sessionmaker[Session] | None = None

    def sessions(self) -> sessionmaker[Session]:
        if self.session_factory is None:
            raise StartupError(
                "State database is not started; call "
                "converge.adapters.sqlalchemy.startup() first"
            )
        return self.session_factory


_STATE = _AdapterState()


def create_state_engine(database: DatabaseConfig) -> Engine:
    """Build an engine for ``database``; SQLite waits ``busy_timeout`` on locked files."""

    connect_args: dict[str, object] = {}
    if database.is_sqlite:
        connect_args["timeout"] = database.busy_timeout
    return create_engine(database.uri, echo=database.echo, connect_args=connect_args)


def startup(
    *,
    engine: Engine | None = None,
    database: DatabaseConfig | None = None,
    force: bool = False,
) -> None:
    """Bind the adapter to a migrated database.

    ``engine`` wins over ``database``; with neither the environment decides.
    A second call needs ``force=True``.
    """

    if _STATE.engine is not None and not force:
        raise StartupError("State database already started; pass force=True to rebind")

    resolved = engine or create_state_engine(database or get_database_config())
    start_mappers()
    upgrade_head(engine=resolved)
    _STATE.engine = resolved
    _STATE.session_factory = sessionmaker(bind=resolved, expire_on_commit=False)
    log.debug("State database: %s", resolved.url.render_as_string(hide_password=True))


def configured_engine() -> Engine | None:
    return _STATE.engine


def is_started() -> bool:
    return _STATE.engine is not None


def shutdown() -> None:
    """Dispose the engine and forget it; tests call this between cases."""

    if _STATE.engine is not None:
        _STATE.engine.dispose()
    _STATE.engine = None
    _STATE.session_factory = None


class SqlAlchemyStateUnitOfWork:
    """One session over the snapshot and lock tables.

    Work that was not committed when the block exits is discarded.
    """

    def __init__(self) -> None:
        self._session_factory = _STATE.sessions()
        self._session: Session | None = None
        self._repositories: StateRepositories | None = None

    def __enter__(self) -> Self:
        if self._session is not None:
            raise StartupError("Unit of work is already open")
        session = self._session_factory()
        self._session = session
        self._repositories = StateRepositories(
            states=SqlAlchemyStateRepository(session),
            locks=SqlAlchemyLockRepository(session),
        )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> Literal[False]:
        session = self.session
        try:
            if exc_type is not None:
                session.rollback()
        finally:
            session.close()
            self._session = None
            self._repositories = None
        return False

    @property
    def session(self) -> Session:
        if self._session is None:
            raise StartupError("Unit of work is not open")
        return self._session

    @property
    def repositories(self) -> StateRepositories:
        if self._repositories is None:
            raise StartupError("Unit of work is not open")
        return self._repositories

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
