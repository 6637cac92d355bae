"""SQLite backend for local mode and tests.

Uses the same ORM tables as PostgreSQL; only the engine differs.  Things
to keep in mind when running on SQLite:

* ``JSONB`` columns are stored as JSON text.
* ``DateTime(timezone=True)`` values come back naive.  Everything written
  is UTC, so the repositories re-attach the zone on read.
* File databases run in WAL mode so the limit lookup can read while a
  tracking transaction holds the write lock.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

_MEMORY = ":memory:"

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def _apply_pragmas(dbapi_conn: object, _record: object) -> None:
    cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
    try:
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def get_local_engine(db_path: Path | str = ".metering/state.db") -> AsyncEngine:
    """Build an aiosqlite engine for *db_path*.

    Parameters
    ----------
    db_path:
        Database file; missing parent directories are created.  ``:memory:``
        gives a throwaway database shared by all sessions of the engine.

    Returns
    -------
    AsyncEngine
    """
    if str(db_path) == _MEMORY:
        # One shared connection, otherwise each session sees an empty database.
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{_MEMORY}",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        logger.info("Metering store running on in-memory SQLite")
        return engine

    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine.sync_engine, "connect", _apply_pragmas)
    logger.info("Metering store running on SQLite file %s", path)
    return engine
