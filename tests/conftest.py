import pytest_asyncio
from tortoise import Tortoise

from pipeline_core.core.db import MODELS_MODULES


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite schema per test."""
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": MODELS_MODULES})
    await Tortoise.generate_schemas()
    yield
    await Tortoise.close_connections()
