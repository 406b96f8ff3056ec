"""Root logger setup for the command line."""

from __future__ import annotations

import logging
from typing import Final

from .env import env_value

LOG_FORMAT: Final = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_CHATTY_LOGGERS: Final = ("httpx", "httpcore", "alembic.runtime.migration")


def _parse_level(raw: str) -> int:
    level = logging.getLevelName(raw.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level {raw!r}")
    return level


def configure_logging(*, level: int | None = None, force: bool = False) -> None:
    """Configure the root logger for CLI output.

    ``level`` defaults to ``CONVERGE_LOG_LEVEL`` (INFO when unset). Request and
    migration chatter from libraries only shows up at DEBUG.
    """

    effective = (
        level if level is not None else env_value("CONVERGE_LOG_LEVEL", _parse_level, logging.INFO)
    )
    logging.basicConfig(level=effective, format=LOG_FORMAT, datefmt="%H:%M:%S", force=force)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(effective, logging.WARNING))
