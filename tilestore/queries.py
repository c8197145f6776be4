"""Statement builders for the tile table.

All statements are SQLAlchemy Core constructs with bound parameters; the
table name only ever reaches SQL as a quoted identifier.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import pydantic
import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.sql import Executable

from tilestore.config import MAX_ZOOM
from tilestore.exceptions import UnsupportedFeatureError, ValidationError
from tilestore.quadtree import max_index

# Dialects with a native INSERT ... ON CONFLICT DO UPDATE
_NATIVE_UPSERT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class TileQuery(BaseModel):
    """Options of a range query over one zoom level.

    Attributes:
        zoom: Zoom level to scan.
        idx_from: Inclusive lower idx bound.
        idx_before: Exclusive upper idx bound.
        bigger_than: Only tiles whose stored size is >= this value.
        smaller_than: Only tiles whose stored size is < this value.
        include_tile: Return payloads and headers, not just indexes.
        date_from: Write-time lower bound; not supported.
        date_before: Write-time upper bound; not supported.
    """

    model_config = ConfigDict(strict=True, frozen=True)

    zoom: int = Field(ge=0, le=MAX_ZOOM)
    idx_from: int | None = None
    idx_before: int | None = None
    bigger_than: int | float | None = None
    smaller_than: int | float | None = None
    include_tile: bool = False
    date_from: datetime | None = None
    date_before: datetime | None = None

    @model_validator(mode="after")
    def _check_bounds(self) -> TileQuery:
        end = max_index(self.zoom)
        start = self.idx_from if self.idx_from is not None else 0
        stop = self.idx_before if self.idx_before is not None else end
        if not 0 <= start <= stop <= end:
            raise ValueError(f"must satisfy 0 <= idx_from <= idx_before <= {end}")
        if self.smaller_than is not None and self.smaller_than <= 0:
            raise ValueError("smaller_than must be positive")
        if (
            self.date_from is not None
            and self.date_before is not None
            and self.date_from >= self.date_before
        ):
            raise ValueError("must satisfy date_from < date_before")
        return self

    @classmethod
    def parse(cls, **options: Any) -> TileQuery:
        """Validate query options.

        Raises:
            ValidationError: If an option has the wrong type or the bounds
                are inverted or out of range.
            UnsupportedFeatureError: If a date filter is requested.
        """
        try:
            query = cls(**options)
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Invalid query options",
                context={
                    "options": options,
                    "errors": "; ".join(
                        f"{'.'.join(str(p) for p in err['loc']) or 'query'}: {err['msg']}"
                        for err in e.errors()
                    ),
                },
            ) from e
        if query.date_from is not None or query.date_before is not None:
            raise UnsupportedFeatureError(
                "Date filtering is not supported: tiles carry no write time",
                context={"options": options},
            )
        return query


def _key(table: sa.Table, zoom: int, idx: int) -> sa.ColumnElement[bool]:
    return sa.and_(table.c.zoom == zoom, table.c.idx == idx)


def select_tile(table: sa.Table, zoom: int, idx: int) -> sa.Select:
    """SELECT the payload of one tile."""
    return sa.select(table.c.tile).where(_key(table, zoom, idx))


def select_tile_size(table: sa.Table, zoom: int, idx: int) -> sa.Select:
    """SELECT only the payload length of one tile."""
    return sa.select(sa.func.length(table.c.tile).label("len")).where(
        _key(table, zoom, idx)
    )


def update_tile(
    table: sa.Table, zoom: int, idx: int, data: bytes
) -> sa.Update:
    """UPDATE an existing tile in place."""
    return sa.update(table).where(_key(table, zoom, idx)).values(tile=data)


def insert_tile_if_missing(
    table: sa.Table, zoom: int, idx: int, data: bytes
) -> sa.Insert:
    """INSERT a tile unless a row with the same key already exists."""
    values = sa.select(
        sa.literal(zoom, sa.SmallInteger),
        sa.literal(idx, sa.BigInteger),
        sa.literal(data, sa.LargeBinary),
    ).where(
        ~sa.select(table.c.idx)
        .where(_key(table, zoom, idx))
        .correlate(None)
        .exists()
    )
    return sa.insert(table).from_select(["zoom", "idx", "tile"], values)


def upsert_tile(
    table: sa.Table,
    zoom: int,
    idx: int,
    data: bytes,
    dialect: str,
    atomic: bool = True,
) -> list[Executable]:
    """Statements that write a tile whether or not it exists.

    With ``atomic`` set and a dialect that supports it, a single
    ``INSERT ... ON CONFLICT (zoom, idx) DO UPDATE``. Otherwise an UPDATE
    followed by a NOT EXISTS guarded INSERT. The pair is not atomic: two
    writers may both find the row absent, and the primary key then rejects
    the second insert.

    Args:
        table: The tile table.
        zoom: Zoom level.
        idx: Tile index.
        data: Non-empty payload.
        dialect: Name of the connection's dialect.
        atomic: Prefer the native conflict-resolving insert.

    Returns:
        Statements to execute in order.
    """
    insert = _NATIVE_UPSERT.get(dialect) if atomic else None
    if insert is None:
        return [
            update_tile(table, zoom, idx, data),
            insert_tile_if_missing(table, zoom, idx, data),
        ]
    stmt = insert(table).values(zoom=zoom, idx=idx, tile=data)
    return [
        stmt.on_conflict_do_update(
            index_elements=[table.c.zoom, table.c.idx],
            set_={"tile": stmt.excluded.tile},
        )
    ]


def delete_tile(table: sa.Table, zoom: int, idx: int) -> sa.Delete:
    """DELETE one tile."""
    return sa.delete(table).where(_key(table, zoom, idx))


def select_range(table: sa.Table, query: TileQuery) -> sa.Select:
    """SELECT the tiles of one zoom level matching the query filters.

    Only the filters present in ``query`` add a predicate. Rows come back
    in ascending idx order.
    """
    columns: list[Any] = [table.c.idx]
    if query.include_tile:
        columns.append(table.c.tile)

    conditions = [table.c.zoom == query.zoom]
    if query.idx_from is not None:
        conditions.append(table.c.idx >= query.idx_from)
    if query.idx_before is not None:
        conditions.append(table.c.idx < query.idx_before)
    if query.smaller_than is not None:
        conditions.append(sa.func.length(table.c.tile) < query.smaller_than)
    if query.bigger_than is not None:
        conditions.append(sa.func.length(table.c.tile) >= query.bigger_than)

    return sa.select(*columns).where(*conditions).order_by(table.c.idx)
