from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from tilestore.config import StoreConfig
from tilestore.store import TileStore


@pytest.fixture
def store_config(tmp_path: Path) -> StoreConfig:
    """Configuration for a fresh SQLite store in a temporary directory."""
    return StoreConfig(
        driver="sqlite+aiosqlite",
        database="tiles",
        data_dir=tmp_path,
        create_if_missing=True,
    )


@pytest.fixture
async def store(store_config: StoreConfig):
    """A connected store with buffering disabled."""
    store = await TileStore.connect(store_config)
    yield store
    await store.close()


@pytest.fixture
async def batched_store(store_config: StoreConfig):
    """A connected store that flushes batches above three entries."""
    config = store_config.model_copy(update={"max_batch_size": 3})
    store = await TileStore.connect(config)
    yield store
    await store.close()


@pytest.fixture
def runner() -> CliRunner:
    """Click test runner."""
    return CliRunner()


@pytest.fixture
def store_uri(tmp_path: Path) -> str:
    """URI of a SQLite store in a temporary directory."""
    return f"sqlite://{tmp_path}?database=tiles"
