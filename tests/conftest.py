"""Shared fixtures for the clipstore test suite."""

import asyncio
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlmodel import Session

from clipstore.config import Config
from clipstore.db.manager import ClipDatabase
from clipstore.models.models import Clip


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway data directory."""
    return Config(
        DATA_DIR=str(tmp_path / "data"),
        SOCKETIO_ASYNC_MODE="threading",
        COMPACT_RETRY_DELAY=0.01,
        LOG_LEVEL="DEBUG",
    )


@pytest_asyncio.fixture
async def db(settings):
    store = ClipDatabase(settings=settings)
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def make_db(tmp_path):
    """Factory for stores with custom settings; each gets its own database file."""
    stores = []

    async def factory(name="custom", **overrides):
        overrides.setdefault("COMPACT_RETRY_DELAY", 0.01)
        settings = Config(DATA_DIR=str(tmp_path / name), **overrides)
        store = ClipDatabase(settings=settings)
        await store.initialize()
        stores.append(store)
        return store

    yield factory
    for store in stores:
        await store.close()


@pytest.fixture
def set_timestamp():
    """Overwrite a clip's timestamp so ordering tests are deterministic."""

    def setter(store: ClipDatabase, clip_id: int, timestamp: datetime):
        with Session(store.engine) as session:
            session.exec(update(Clip).where(Clip.id == clip_id).values(timestamp=timestamp))
            session.commit()

    return setter


@pytest.fixture
def run():
    """Run a coroutine from a synchronous test."""
    return asyncio.run
