"""Helpers shared by the tile store tests."""

from __future__ import annotations

import gzip

from tilestore.quadtree import index_to_xy
from tilestore.store import TileStore


def pbf(payload: bytes) -> bytes:
    """Gzip a payload the way tile generators hand it to the store."""
    return gzip.compress(payload)


async def put_at(store: TileStore, zoom: int, idx: int, data: bytes) -> None:
    """Write a tile addressed by index instead of coordinates."""
    x, y = index_to_xy(idx, zoom)
    await store.put_tile(zoom, x, y, data)


async def collect(cursor) -> list:
    """Drain a cursor into a list."""
    return [record async for record in cursor]
