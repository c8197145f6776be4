"""Exception types for tile store failures.

Every error raised by a store carries the sanitised URI of the store it
came from (credentials masked), so callers that talk to several stores can
tell which one failed. ``TileNotFound`` is an expected condition, not a
fault: it is kept apart from ``StorageFault`` so callers can branch on
"no such tile" versus "store broken".
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.exc import SQLAlchemyError


class TileStoreError(Exception):
    """Base class for all tile store errors."""

    def __init__(
        self,
        message: str,
        store_uri: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable description of the failure.
            store_uri: Sanitised URI of the store that raised it.
            context: Optional dict of additional context (zoom, idx, options).
        """
        self.message = message
        self.store_uri = store_uri
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message]
        if self.store_uri:
            parts.append(f"Store: {self.store_uri}")

        if self.context:
            parts.append("Context:")
            for key, value in self.context.items():
                parts.append(f"  {key}: {value}")

        return "\n".join(parts)

    def attach_store(self, store_uri: str) -> None:
        """Record the store URI unless one is already attached."""
        if self.store_uri is None:
            self.store_uri = store_uri
            self.args = (self._format_message(),)


class ConfigurationError(TileStoreError):
    """Missing or malformed configuration, or a write outside the zoom window."""


class TileNotFound(TileStoreError, LookupError):
    """Raised when a tile or the metadata record does not exist."""


class ValidationError(TileStoreError):
    """Raised for malformed addresses or query options."""


class UnsupportedFeatureError(ValidationError):
    """Raised when a recognised but unimplemented feature is requested.

    Date filtering and write-time reads fall in this category: the table
    has no write-time column.
    """


class StorageFault(TileStoreError):
    """Connection or query failure, constraint violation, schema mismatch."""


class BatchProtocolError(TileStoreError):
    """Raised when ``end_batch()`` is called more times than ``begin_batch()``."""


def annotate(exc: BaseException, store_uri: str) -> BaseException:
    """Attach store context to an exception.

    Args:
        exc: The exception being propagated.
        store_uri: Sanitised URI of the store.

    Returns:
        The exception to raise: the same ``TileStoreError`` with the store
        attached, or a ``StorageFault`` chained to any other ``Exception``.
        Non-``Exception`` signals such as cancellation come back unchanged.
    """
    if isinstance(exc, TileStoreError):
        exc.attach_store(store_uri)
        return exc
    if not isinstance(exc, Exception):
        return exc
    if isinstance(exc, SQLAlchemyError):
        message = f"Storage operation failed: {exc.__class__.__name__}: {exc}"
    else:
        message = f"Unexpected failure: {exc.__class__.__name__}: {exc}"
    fault = StorageFault(message, store_uri=store_uri)
    fault.__cause__ = exc
    return fault
