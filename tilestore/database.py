"""Engine creation and table bootstrap for the tile store."""

from __future__ import annotations

import logging
from typing import Any

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    create_async_engine,
)

from tilestore.config import StoreConfig
from tilestore.exceptions import StorageFault

logger = logging.getLogger(__name__)


def create_engine(config: StoreConfig) -> AsyncEngine:
    """Create the async engine for a store.

    SQLite connections are switched to WAL mode so a streaming range
    query does not block writers.

    Args:
        config: Validated store configuration.

    Returns:
        An AsyncEngine; no connection is opened yet.
    """
    url = config.url()
    if url.get_backend_name() != "sqlite":
        return create_async_engine(url, echo=config.echo)

    if config.data_dir is not None:
        config.data_dir.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(
        url,
        echo=config.echo,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine


async def _has_table(conn: AsyncConnection, name: str) -> bool:
    return await conn.run_sync(
        lambda sync_conn: sa.inspect(sync_conn).has_table(name)
    )


async def bootstrap_table(
    engine: AsyncEngine, table: sa.Table, create_if_missing: bool
) -> None:
    """Create the tile table, or check that the existing one is usable.

    With ``create_if_missing`` the table is created only when absent.
    Otherwise a zero-row SELECT of every column is issued, so a missing or
    malformed table fails here instead of on the first tile request.

    Raises:
        StorageFault: If the table is missing or lacks the expected columns.
    """
    async with engine.begin() as conn:
        if create_if_missing:
            if await _has_table(conn, table.name):
                return
            await conn.run_sync(table.create)
            logger.info(f"Created tile table '{table.name}'")
            return

        probe = sa.select(table.c.zoom, table.c.idx, table.c.tile).where(
            table.c.zoom.is_(None), table.c.idx.is_(None)
        )
        try:
            await conn.execute(probe)
        except DBAPIError as e:
            raise StorageFault(
                f"Tile table '{table.name}' is missing or malformed",
                context={"error": str(e.orig)},
            ) from e
