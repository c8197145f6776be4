"""Pull-based iteration over a server-side result cursor.

A producer task streams rows from the database into a queue holding a
single item. Besides that one queued row, the producer holds at most the
row it is blocked on, so reads stay a bounded distance ahead of the
consumer. The producer ends with a terminal value, either an end marker
or the exception it hit, which the consumer receives from ``next()``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.sql import Executable

from tilestore.exceptions import annotate

if TYPE_CHECKING:
    from types import TracebackType

    from typing_extensions import Self

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_YIELD_PER = 100

_END = object()


@dataclass
class _Failure:
    error: Exception


class TileCursor(Generic[T]):
    """Lazy, single-pass sequence over the rows of a statement.

    Nothing is executed until the first ``next()``. Once the sequence is
    exhausted, or a fault has been delivered, every later ``next()``
    returns ``None``; a cursor cannot be restarted.

    Example::

        async with store.query(zoom=12, idx_from=10, idx_before=20) as cursor:
            async for record in cursor:
                print(record.idx)

    Args:
        engine: Engine to take the streaming connection from.
        statement: Statement producing the rows.
        transform: Converts each row into the value handed to the consumer.
        store_uri: Sanitised store URI attached to delivered faults.
        yield_per: Rows fetched per round trip from the server-side cursor.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        statement: Executable,
        transform: Callable[[Row[Any]], T],
        store_uri: str,
        yield_per: int = DEFAULT_YIELD_PER,
    ) -> None:
        self._engine = engine
        self._statement = statement
        self._transform = transform
        self._store_uri = store_uri
        self._yield_per = yield_per
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1)
        self._task: asyncio.Task[None] | None = None
        self._finished = False

    @property
    def finished(self) -> bool:
        """True once the end of the sequence or a fault has been delivered."""
        return self._finished

    async def _produce(self) -> None:
        try:
            async with self._engine.connect() as conn:
                result = await conn.stream(
                    self._statement,
                    execution_options={"yield_per": self._yield_per},
                )
                async for row in result:
                    await self._queue.put(self._transform(row))
        except Exception as e:
            # handed to the consumer through next()
            await self._queue.put(_Failure(e))
        else:
            await self._queue.put(_END)

    async def next(self) -> T | None:
        """Return the next record, or ``None`` at the end of the sequence.

        Raises:
            StorageFault: If the underlying stream or the row transform
                failed. Records delivered before the fault stay delivered.
        """
        if self._finished:
            return None
        if self._task is None:
            logger.debug("Starting tile cursor")
            self._task = asyncio.create_task(self._produce())

        item = await self._queue.get()
        if item is _END:
            self._finished = True
            return None
        if isinstance(item, _Failure):
            self._finished = True
            raise annotate(item.error, self._store_uri)
        return item

    async def aclose(self) -> None:
        """Stop the producer and release its connection."""
        self._finished = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.debug("Tile cursor closed before exhaustion")

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> T:
        item = await self.next()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
