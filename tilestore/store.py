"""TileStore - relational storage for map tiles.

Tiles are opaque, already-compressed payloads addressed by zoom level and
linear quadtree index. The store keeps them in one table with primary key
(zoom, idx); the metadata document lives in the same table at zoom -1,
idx 0. Writes of empty payloads delete the row, so an absent row is the
only representation of "no tile".

Example::

    async with TileStore.open("sqlite:///var/tiles?database=osm&createIfMissing=1") as store:
        await store.put_tile(3, 1, 2, gzipped_pbf)
        data, headers = await store.get_tile(3, 1, 2)

        async with store.batch():
            for z, x, y, payload in tiles:
                await store.put_tile(z, x, y, payload)
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterator, Mapping, Sequence
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version
from typing import Any

import sqlalchemy as sa
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncEngine
from typing_extensions import Self

from tilestore.batch import WriteBatch
from tilestore.config import StoreConfig
from tilestore.cursor import DEFAULT_YIELD_PER, TileCursor
from tilestore.database import bootstrap_table, create_engine
from tilestore.exceptions import (
    ConfigurationError,
    StorageFault,
    TileNotFound,
    UnsupportedFeatureError,
    ValidationError,
    annotate,
)
from tilestore.models import (
    INFO_IDX,
    INFO_ZOOM,
    TILE_HEADERS,
    BatchEntry,
    EntryKind,
    TileRecord,
    tile_table,
)
from tilestore.quadtree import check_index, is_int, tile_index
from tilestore.queries import (
    TileQuery,
    delete_tile,
    select_range,
    select_tile,
    select_tile_size,
    upsert_tile,
)

logger = logging.getLogger(__name__)

TILEJSON_VERSION = "2.1.0"
WORLD_BOUNDS = "-180,-85.0511,180,85.0511"


def _package_version() -> str:
    try:
        return version("tilestore")
    except PackageNotFoundError:
        return "0.0.0"


class TileStore:
    """Tile storage backed by one relational table.

    Instances are created with ``connect()`` or ``open()``, which validate
    the configuration and bootstrap the table. Each instance owns its
    engine and its write batch; batch state is shared by every caller of
    the instance, so concurrent batch sessions need separate instances.
    """

    def __init__(self, config: StoreConfig, engine: AsyncEngine) -> None:
        """Wrap an engine; use ``connect()`` to also bootstrap the table.

        Args:
            config: Validated store configuration.
            engine: Async engine for the configured database.
        """
        self._config = config
        self._engine = engine
        self._table = tile_table(config.table)
        self._uri = config.sanitized_uri()
        self._batch = WriteBatch(self._apply, config.max_batch_size)

    @staticmethod
    def _load_config(
        config: StoreConfig | str | Mapping[str, Any],
    ) -> StoreConfig:
        if isinstance(config, StoreConfig):
            return config
        if isinstance(config, str):
            return StoreConfig.from_uri(config)
        return StoreConfig.load(dict(config))

    @classmethod
    async def connect(
        cls, config: StoreConfig | str | Mapping[str, Any]
    ) -> Self:
        """Validate configuration, open the engine and bootstrap the table.

        Args:
            config: A ``StoreConfig``, a store URI, or a parameter mapping.

        Returns:
            A ready store.

        Raises:
            ConfigurationError: If the configuration is invalid.
            StorageFault: If the table cannot be created or is malformed.
        """
        cfg = cls._load_config(config)
        store = cls(cfg, create_engine(cfg))
        try:
            with store._errors():
                await bootstrap_table(
                    store._engine, store._table, cfg.create_if_missing
                )
        except BaseException:
            await store._engine.dispose()
            raise
        logger.info(
            f"Opened tile store {store.uri} "
            f"(table={cfg.table}, zooms {cfg.minzoom}..{cfg.maxzoom})"
        )
        return store

    @classmethod
    @asynccontextmanager
    async def open(
        cls, config: StoreConfig | str | Mapping[str, Any]
    ) -> AsyncIterator[Self]:
        """Connect a store and close it on exit.

        Example::

            async with TileStore.open(uri) as store:
                info = await store.get_info()
        """
        store = await cls.connect(config)
        try:
            yield store
        finally:
            await store.close()

    async def close(self) -> None:
        """Dispose of the engine.

        Entries still buffered by an unfinished batch are dropped.
        """
        dropped = self._batch.discard()
        if dropped:
            logger.warning(
                f"Discarding {dropped} unflushed tile writes on close of {self.uri}"
            )
        await self._engine.dispose()

    @property
    def uri(self) -> str:
        """Connection target with credentials masked."""
        return self._uri

    @property
    def config(self) -> StoreConfig:
        """Validated configuration the store was opened with."""
        return self._config

    @property
    def engine(self) -> AsyncEngine:
        """Get the underlying async engine."""
        return self._engine

    @property
    def table(self) -> sa.Table:
        """The tile table this store reads and writes."""
        return self._table

    @contextmanager
    def _errors(self) -> Iterator[None]:
        try:
            yield
        except Exception as e:
            err = annotate(e, self._uri)
            if err is e:
                raise
            raise err from e

    # =========================================================================
    # Reads
    # =========================================================================

    def _in_window(self, zoom: int) -> bool:
        if not is_int(zoom):
            raise ValidationError(
                "Zoom level must be an integer", context={"zoom": zoom}
            )
        return self._config.minzoom <= zoom <= self._config.maxzoom

    async def get_tile(
        self, zoom: int, x: int, y: int
    ) -> tuple[bytes, dict[str, str]]:
        """Read one tile.

        Args:
            zoom: Zoom level.
            x: Tile column.
            y: Tile row.

        Returns:
            Tuple of (payload, response headers).

        Raises:
            TileNotFound: If the zoom is outside the store's window or no
                tile is stored at the address.
            ValidationError: If x or y lie outside the zoom level's grid.
        """
        with self._errors():
            if not self._in_window(zoom):
                raise TileNotFound(
                    "Zoom level is outside this store's window",
                    context={
                        "zoom": zoom,
                        "window": f"{self._config.minzoom}..{self._config.maxzoom}",
                    },
                )
            record = await self.query_tile(zoom, tile_index(x, y, zoom))
            if record is None:
                raise TileNotFound(
                    "Tile not found", context={"zoom": zoom, "x": x, "y": y}
                )
            return record.tile, dict(TILE_HEADERS)

    async def query_tile(
        self,
        zoom: int | None = None,
        idx: int | None = None,
        *,
        info: bool = False,
        get_tile: bool = True,
        get_size: bool = False,
        get_write_time: bool = False,
    ) -> TileRecord | None:
        """Point read by address.

        Args:
            zoom: Zoom level.
            idx: Tile index within the zoom level.
            info: Read the metadata record instead; zoom and idx are ignored.
            get_tile: Include the payload.
            get_size: Include the payload length. Without ``get_tile`` only
                the length is fetched.
            get_write_time: Not supported.

        Returns:
            The record, or ``None`` if nothing is stored at the address.

        Raises:
            ValidationError: If the address is malformed.
            UnsupportedFeatureError: If ``get_write_time`` is requested.
        """
        with self._errors():
            if info:
                zoom, idx = INFO_ZOOM, INFO_IDX
            else:
                check_index(zoom, idx)
            if get_write_time:
                raise UnsupportedFeatureError(
                    "Write times are not recorded by this store",
                    context={"zoom": zoom, "idx": idx},
                )

            if get_tile:
                stmt = select_tile(self._table, zoom, idx)
            else:
                stmt = select_tile_size(self._table, zoom, idx)
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).first()

        if row is None:
            return None
        record = TileRecord(zoom=zoom, idx=idx)
        if get_tile:
            record.tile = row.tile
        if get_size:
            record.size = len(row.tile) if get_tile else row.len
        return record

    async def get_info(self) -> dict[str, Any]:
        """Read the metadata document.

        Returns:
            The stored document, or a default descriptor covering the whole
            world and the configured zoom window when none is stored.

        Raises:
            StorageFault: If the stored record is not UTF-8 JSON.
        """
        record = await self.query_tile(info=True)
        if record is not None:
            with self._errors():
                try:
                    return json.loads(record.tile.decode("utf-8"))
                except ValueError as e:
                    raise StorageFault(
                        f"Metadata record is not valid JSON: {e}",
                        context={"zoom": INFO_ZOOM, "idx": INFO_IDX},
                    ) from e
        return {
            "tilejson": TILEJSON_VERSION,
            "name": f"TileStore {_package_version()}",
            "bounds": WORLD_BOUNDS,
            "minzoom": self._config.minzoom,
            "maxzoom": self._config.maxzoom,
        }

    def query(
        self,
        zoom: int,
        *,
        idx_from: int | None = None,
        idx_before: int | None = None,
        bigger_than: float | None = None,
        smaller_than: float | None = None,
        include_tile: bool = False,
        date_from: datetime | None = None,
        date_before: datetime | None = None,
        fetch_size: int = DEFAULT_YIELD_PER,
    ) -> TileCursor[TileRecord]:
        """Stream the tiles of one zoom level matching the given filters.

        Options are validated immediately; the statement runs on the first
        pull from the returned cursor. Records come back in ascending idx
        order.

        Args:
            zoom: Zoom level to scan.
            idx_from: Inclusive lower idx bound.
            idx_before: Exclusive upper idx bound.
            bigger_than: Only tiles of at least this many bytes.
            smaller_than: Only tiles of fewer than this many bytes.
            include_tile: Include payloads and headers in the records.
            date_from: Not supported.
            date_before: Not supported.
            fetch_size: Rows per round trip from the server-side cursor.

        Returns:
            A ``TileCursor`` of ``TileRecord`` objects.

        Raises:
            ValidationError: If the options are malformed.
            UnsupportedFeatureError: If a date filter is given.
        """
        with self._errors():
            options = TileQuery.parse(
                zoom=zoom,
                idx_from=idx_from,
                idx_before=idx_before,
                bigger_than=bigger_than,
                smaller_than=smaller_than,
                include_tile=include_tile,
                date_from=date_from,
                date_before=date_before,
            )

        def to_record(row: Row[Any]) -> TileRecord:
            record = TileRecord(zoom=options.zoom, idx=int(row.idx))
            if options.include_tile:
                record.tile = row.tile
                record.headers = dict(TILE_HEADERS)
            return record

        return TileCursor(
            self._engine,
            select_range(self._table, options),
            to_record,
            store_uri=self._uri,
            yield_per=fetch_size,
        )

    # =========================================================================
    # Writes
    # =========================================================================

    async def put_tile(
        self, zoom: int, x: int, y: int, data: bytes | None
    ) -> None:
        """Write one tile; empty or missing data deletes it.

        Raises:
            ConfigurationError: If the zoom is outside the store's window.
            ValidationError: If x or y lie outside the zoom level's grid.
        """
        with self._errors():
            if not self._in_window(zoom):
                raise ConfigurationError(
                    f"This store cannot save zoom {zoom}, because it is "
                    f"configured for zooms {self._config.minzoom}..{self._config.maxzoom}",
                    context={"zoom": zoom, "x": x, "y": y},
                )
            await self._batch.submit(
                BatchEntry.for_data(zoom, tile_index(x, y, zoom), data)
            )

    async def delete_tile(self, zoom: int, x: int, y: int) -> None:
        """Remove one tile."""
        await self.put_tile(zoom, x, y, None)

    async def put_info(self, doc: Mapping[str, Any]) -> None:
        """Store the metadata document as JSON at the reserved address."""
        with self._errors():
            try:
                data = json.dumps(doc).encode("utf-8")
            except (TypeError, ValueError) as e:
                raise ValidationError(
                    f"Metadata document is not JSON-serialisable: {e}"
                ) from e
            await self._batch.submit(
                BatchEntry.for_data(INFO_ZOOM, INFO_IDX, data)
            )

    async def _apply(self, entries: Sequence[BatchEntry]) -> None:
        """Execute a group of writes in one transaction."""
        with self._errors():
            async with self._engine.begin() as conn:
                dialect = conn.dialect.name
                for entry in entries:
                    if entry.kind is EntryKind.DELETE:
                        await conn.execute(
                            delete_tile(self._table, entry.zoom, entry.idx)
                        )
                        continue
                    for stmt in upsert_tile(
                        self._table,
                        entry.zoom,
                        entry.idx,
                        entry.tile,
                        dialect,
                        atomic=self._config.atomic_upsert,
                    ):
                        await conn.execute(stmt)

    # =========================================================================
    # Batching
    # =========================================================================

    @property
    def batch_depth(self) -> int:
        """Current batch nesting depth; 0 means writes go out immediately."""
        return self._batch.depth

    @property
    def pending_writes(self) -> int:
        """Number of buffered writes waiting for a flush."""
        return self._batch.pending

    def begin_batch(self) -> None:
        """Start buffering writes. Calls nest."""
        self._batch.begin()

    async def end_batch(self) -> None:
        """End one level of batching; the outermost level flushes.

        Raises:
            BatchProtocolError: If no batch is active.
        """
        with self._errors():
            await self._batch.end()

    async def flush(self) -> None:
        """Write out all buffered entries now."""
        with self._errors():
            await self._batch.flush()

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[Self]:
        """Buffer writes for the duration of the block.

        Example::

            async with store.batch():
                await store.put_tile(5, 3, 7, payload)
        """
        self.begin_batch()
        try:
            yield self
        finally:
            await self.end_batch()
