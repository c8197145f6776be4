"""tilestore - relational storage backend for map tiles.

Stores pre-compressed tile payloads addressed by (zoom, quadtree index) in
a single SQL table, with batched writes and streamed range queries.
"""

from tilestore.config import StoreConfig
from tilestore.cursor import TileCursor
from tilestore.exceptions import (
    BatchProtocolError,
    ConfigurationError,
    StorageFault,
    TileNotFound,
    TileStoreError,
    UnsupportedFeatureError,
    ValidationError,
)
from tilestore.models import TILE_HEADERS, TileRecord
from tilestore.quadtree import index_to_xy, tile_index, xy_to_index
from tilestore.store import TileStore

__all__ = [
    "TILE_HEADERS",
    "BatchProtocolError",
    "ConfigurationError",
    "StorageFault",
    "StoreConfig",
    "TileCursor",
    "TileNotFound",
    "TileRecord",
    "TileStore",
    "TileStoreError",
    "UnsupportedFeatureError",
    "ValidationError",
    "index_to_xy",
    "tile_index",
    "xy_to_index",
]
