from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.shared.store import KeyValueStore


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}"


@pytest_asyncio.fixture
async def session_factory(database_url):
    engine = create_async_engine(database_url, echo=False)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def product_store(session_factory):
    store = KeyValueStore(session_factory, "products", partition_key="id")
    await store.create_table()
    return store


@pytest_asyncio.fixture
async def basket_store(session_factory):
    store = KeyValueStore(session_factory, "baskets", partition_key="userName")
    await store.create_table()
    return store


@pytest_asyncio.fixture
async def order_store(session_factory):
    store = KeyValueStore(
        session_factory, "orders", partition_key="userName", sort_key="orderDate"
    )
    await store.create_table()
    return store


@pytest.fixture
def publisher():
    """発行を記録するだけの Publisher"""
    publisher = AsyncMock()
    publisher.publish.return_value = "1760000000000-0"
    return publisher
