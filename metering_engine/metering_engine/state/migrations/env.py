"""Alembic entry point for the metering schema.

``METERING_DATABASE_URL`` takes precedence over ``sqlalchemy.url`` in
``alembic.ini``.  Async driver URLs are mapped onto their synchronous
counterparts because Alembic drives migrations through a blocking
connection.  SQLite runs in batch mode so ``ALTER`` operations work.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from metering_engine.state.tables import Base
from sqlalchemy import create_engine, pool

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

_LOCAL_URL = "sqlite+aiosqlite:///.metering/state.db"

# async driver prefix -> sync driver prefix
_SYNC_DRIVERS = (
    ("postgresql+asyncpg://", "postgresql+psycopg://"),
    ("postgresql://", "postgresql+psycopg://"),
    ("sqlite+aiosqlite://", "sqlite://"),
)


def sync_url(url: str) -> str:
    """Map an application URL onto the driver Alembic connects with."""
    for async_prefix, sync_prefix in _SYNC_DRIVERS:
        if url.startswith(async_prefix):
            url = sync_prefix + url.removeprefix(async_prefix)
            break
    # asyncpg spells it ``ssl``, libpq spells it ``sslmode``.
    return url.replace("ssl=require", "sslmode=require")


def _target_url() -> str:
    url = os.environ.get("METERING_DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        logger.warning("No metering database configured; migrating %s", _LOCAL_URL)
        url = _LOCAL_URL
    return sync_url(url)


def _configure(**kwargs: object) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    _configure(url=_target_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
else:
    engine = create_engine(_target_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
    finally:
        engine.dispose()
