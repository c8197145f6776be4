"""Write batching for a tile store.

``WriteBatch`` collects pending writes while batch mode is active and
hands them to the store as one group. Batch mode nests: each ``begin()``
must be matched by an ``end()``, and only the outermost ``end()`` flushes.
The buffer holds no lock; callers sharing one store across tasks get
arbitrarily interleaved groups.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence

from tilestore.exceptions import BatchProtocolError
from tilestore.models import BatchEntry

logger = logging.getLogger(__name__)

ApplyFn = Callable[[Sequence[BatchEntry]], Awaitable[None]]


class WriteBatch:
    """Pending write buffer with a nesting counter.

    Args:
        apply: Coroutine function that submits a group of entries.
        max_size: Pending entries kept before an automatic flush. ``None``
            makes every submission immediate, even in batch mode.
    """

    def __init__(self, apply: ApplyFn, max_size: int | None = None) -> None:
        self._apply = apply
        self._max_size = max_size
        self._depth = 0
        self._pending: list[BatchEntry] = []

    @property
    def depth(self) -> int:
        """Current nesting depth; 0 means direct-write mode."""
        return self._depth

    @property
    def pending(self) -> int:
        """Number of entries waiting for a flush."""
        return len(self._pending)

    def begin(self) -> None:
        """Enter (or nest deeper into) batch mode."""
        self._depth += 1

    async def end(self) -> None:
        """Leave one level of batch mode, flushing when the last level ends.

        Raises:
            BatchProtocolError: If batch mode is not active.
        """
        if self._depth == 0:
            raise BatchProtocolError(
                "end_batch() called more times than begin_batch()"
            )
        self._depth -= 1
        if self._depth == 0:
            await self.flush()

    async def submit(self, entry: BatchEntry) -> None:
        """Apply an entry now, or queue it when buffering.

        A queued entry that pushes the pending count above ``max_size``
        flushes the whole group before returning.
        """
        if self._depth == 0 or not self._max_size:
            await self._apply([entry])
            return

        self._pending.append(entry)
        if len(self._pending) > self._max_size:
            await self.flush()

    async def flush(self) -> None:
        """Submit all pending entries as one group.

        The pending list is swapped out before the submission is awaited,
        so entries queued meanwhile land in the next group. A failed
        submission is not retried and its entries are not re-queued.
        """
        if not self._pending:
            return
        group, self._pending = self._pending, []
        logger.debug(f"Flushing {len(group)} batched tile writes")
        await self._apply(group)

    def discard(self) -> int:
        """Drop all pending entries, returning how many were dropped."""
        dropped = len(self._pending)
        self._pending = []
        return dropped
