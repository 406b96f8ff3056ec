"""Alembic environment of the state database."""

from __future__ import annotations

from alembic import context
from sqlalchemy import create_engine, pool

from converge.adapters.sqlalchemy.mappings import mapper_registry, start_mappers
from converge.config import get_database_config

config = context.config

start_mappers()
target_metadata = mapper_registry.metadata


def _database_url() -> str:
    return config.get_main_option("sqlalchemy.url") or get_database_config().uri


def _migrate(**options: object) -> None:
    context.configure(
        target_metadata=target_metadata, render_as_batch=True, compare_type=True, **options
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline() -> None:
    _migrate(url=_database_url(), literal_binds=True)


def run_migrations_online() -> None:
    # upgrade_head() hands over a connection that is already in a transaction
    connection = config.attributes.get("connection")
    if connection is not None:
        _migrate(connection=connection)
        return

    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as owned:
            _migrate(connection=owned)
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
