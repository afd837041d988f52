import itertools
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TXN_INITIAL_DELAY"] = "0.001"
os.environ["OCC_INITIAL_DELAY"] = "0.001"
os.environ["ENV"] = "dev"

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from stockledger.db.dependencies import get_session_factory
from stockledger.inventory import repository
from stockledger.main import app
from stockledger.schema.full_schema import Product

url_prefix = "/api/v1"

ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Roles": "admin"}
USER_HEADERS = {"X-User-Id": "user-42", "X-User-Roles": "customer"}


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stockledger.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def make_product(session_factory):
    counter = itertools.count(1)

    async def _make(stock_qty: int = 10, **fields) -> Product:
        fields.setdefault("name", f"Test product {next(counter)}")
        fields.setdefault("base_price", 49900)
        async with session_factory() as session:
            product = Product(stock_qty=stock_qty, **fields)
            session.add(product)
            await session.commit()
            await session.refresh(product)
            return product

    return _make


@pytest.fixture
def reload_product(session_factory):
    async def _reload(product: Product) -> Product:
        async with session_factory() as session:
            return await repository.fetch_product(session, product_id=product.id)

    return _reload


@pytest.fixture
def ledger_of(session_factory):
    """Ledger rows of a product, oldest first."""
    async def _ledger(product: Product):
        async with session_factory() as session:
            entries = await repository.fetch_ledger_for_product(session, product.id)
            return list(reversed(entries))

    return _ledger


@pytest.fixture
async def ac_client(session_factory):

    async def _override_session_factory():
        yield session_factory

    app.dependency_overrides[get_session_factory] = _override_session_factory
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    app.dependency_overrides.pop(get_session_factory, None)
