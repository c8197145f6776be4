"""Table definition and record types for the tile store.

Table (one per store, name configurable):
- zoom: smallint, -1 holds the metadata record
- idx: bigint, linear quadtree index within the zoom level
- tile: blob payload, already compressed by the caller

Primary key (zoom, idx). On PostgreSQL the tile column is switched to
EXTERNAL storage right after creation so TOAST does not try to compress
gzip payloads a second time.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

import sqlalchemy as sa

# Reserved address of the metadata document
INFO_ZOOM = -1
INFO_IDX = 0

TILE_HEADERS = {
    "Content-Type": "application/x-protobuf",
    "Content-Encoding": "gzip",
}


def tile_table(name: str, metadata: sa.MetaData | None = None) -> sa.Table:
    """Build the table definition for a store.

    Args:
        name: Table name (already validated as an identifier).
        metadata: MetaData to attach the table to; a fresh one by default.

    Returns:
        The ``Table`` object.
    """
    table = sa.Table(
        name,
        metadata if metadata is not None else sa.MetaData(),
        sa.Column("zoom", sa.SmallInteger, nullable=False),
        sa.Column("idx", sa.BigInteger, nullable=False),
        sa.Column("tile", sa.LargeBinary, nullable=False),
        sa.PrimaryKeyConstraint("zoom", "idx", name=f"{name}_pkey"),
    )
    sa.event.listen(
        table,
        "after_create",
        sa.DDL(
            "ALTER TABLE %(fullname)s ALTER COLUMN tile SET STORAGE EXTERNAL"
        ).execute_if(dialect="postgresql"),
    )
    return table


@dataclass
class TileRecord:
    """A tile row as returned by point reads and range queries.

    Attributes:
        zoom: Zoom level.
        idx: Quadtree index within the zoom level.
        tile: Payload bytes, when requested.
        size: Payload length in bytes, when requested.
        headers: Response headers for the payload, when the tile is included.
    """

    zoom: int
    idx: int
    tile: bytes | None = None
    size: int | None = None
    headers: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, leaving out fields that were not requested."""
        result: dict[str, Any] = {"zoom": self.zoom, "idx": self.idx}
        if self.tile is not None:
            result["tile"] = self.tile
        if self.size is not None:
            result["size"] = self.size
        if self.headers is not None:
            result["headers"] = self.headers
        return result


class EntryKind(str, enum.Enum):
    """Kind of a pending write."""

    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class BatchEntry:
    """One pending write or delete."""

    kind: EntryKind
    zoom: int
    idx: int
    tile: bytes | None = None

    @classmethod
    def for_data(cls, zoom: int, idx: int, data: bytes | None) -> BatchEntry:
        """Build the entry for a write; empty data becomes a delete."""
        if data:
            return cls(EntryKind.UPSERT, zoom, idx, bytes(data))
        return cls(EntryKind.DELETE, zoom, idx)
