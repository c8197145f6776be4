"""FastAPI application serving tiles from a TileStore.

Routes:
- GET /info: the store's metadata document
- GET /{z}/{x}/{y}.pbf: one tile, sent with the stored encoding headers
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import Response

from tilestore.config import StoreConfig
from tilestore.exceptions import TileNotFound, ValidationError
from tilestore.store import TileStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tiles"])


def get_store(request: Request) -> TileStore:
    """Dependency returning the store attached to the application."""
    return request.app.state.store


StoreDep = Annotated[TileStore, Depends(get_store)]


@router.get("/info")
async def get_info(store: StoreDep) -> dict[str, Any]:
    """Return the metadata document."""
    return await store.get_info()


@router.get("/{z}/{x}/{y}.pbf")
async def get_tile(z: int, x: int, y: int, store: StoreDep) -> Response:
    """Return one tile."""
    try:
        data, headers = await store.get_tile(z, x, y)
    except TileNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=e.message
        ) from e
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=e.message
        ) from e
    return Response(
        content=data,
        media_type=headers["Content-Type"],
        headers={"Content-Encoding": headers["Content-Encoding"]},
    )


def create_app(source: TileStore | StoreConfig | str) -> FastAPI:
    """Create the tile-serving application.

    Args:
        source: A connected store to serve from, or a configuration (or
            store URI) to connect when the application starts. A store
            connected by the application is closed when it stops.

    Returns:
        The FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(source, TileStore):
            logger.info(f"Serving tiles from {source.uri}")
            yield
            return
        async with TileStore.open(source) as store:
            app.state.store = store
            logger.info(f"Serving tiles from {store.uri}")
            yield

    app = FastAPI(
        title="Tile Store",
        description="Map tiles served from a relational tile store",
        lifespan=lifespan,
    )
    if isinstance(source, TileStore):
        app.state.store = source
    app.include_router(router)
    return app
