"""Engine and session plumbing for the metering durable store.

The ledger, summaries, alerts and tenant plans live in one relational
database.  The URL scheme picks the backend:

* ``postgresql+asyncpg://`` for shared deployments (pooled, short timeouts)
* ``sqlite+aiosqlite://`` for local mode and tests

Counters are not stored here; see :mod:`metering_engine.counters`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Metering writes run inside request handling; a blocked statement fails fast.
_PG_SERVER_SETTINGS = {
    "statement_timeout": "5000",
    "lock_timeout": "2000",
}

# engine id -> (engine, factory); the engine reference pins the id.
_factories: dict[int, tuple[AsyncEngine, async_sessionmaker[AsyncSession]]] = {}


def sqlite_path_from_url(database_url: str) -> str:
    """Return the file path of a ``sqlite+aiosqlite:///path`` URL.

    URLs without a path (``sqlite+aiosqlite://``) map to ``:memory:``.
    """
    _, sep, path = database_url.partition("///")
    return path if sep and path else ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL (asyncpg) or SQLite (aiosqlite) connection string.
    pool_size, max_overflow:
        PostgreSQL pool sizing; ignored for SQLite.

    Returns
    -------
    AsyncEngine
    """
    if database_url.startswith("sqlite"):
        from metering_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(sqlite_path_from_url(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={"server_settings": dict(_PG_SERVER_SETTINGS)},
    )
    logger.info("Metering store engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def dialect_name(session: AsyncSession) -> str:
    """Name of the dialect the session is bound to (``postgresql``, ``sqlite``)."""
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def create_tables(engine: AsyncEngine) -> None:
    """Create every metering table that does not exist yet.

    Shared deployments run the Alembic revision instead.
    """
    from metering_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Metering tables created/verified on %s", engine.url.get_backend_name())


def _factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    cached = _factories.get(id(engine))
    if cached is None or cached[0] is not engine:
        cached = (engine, async_sessionmaker(engine, expire_on_commit=False))
        _factories[id(engine)] = cached
    return cached[1]


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on normal exit and rolls back on error."""
    session = _factory_for(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
