import sys
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from groomhub_api.app import create_app
from groomhub_api.db.base import Base
from groomhub_api.db.session import get_session
from groomhub_api.models import Customer, LoyaltyAccount
from groomhub_api.observability.loyalty import get_loyalty_store


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()


@pytest.fixture(autouse=True)
def reset_loyalty_store():
    store = get_loyalty_store()
    store.reset()
    yield store
    store.reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def create_customer(session_factory):
    async def _create(email: str | None = None, **fields):
        async with session_factory() as session:
            customer = Customer(email=email or f"{uuid4().hex[:10]}@example.com", **fields)
            session.add(customer)
            await session.commit()
            return customer.id

    return _create


@pytest.fixture
def seed_account(session_factory, create_customer):
    """Create a customer with a punch card already in progress."""

    async def _seed(*, current_punches: int = 0, total_visits: int = 0, threshold_override: int | None = None):
        customer_id = await create_customer()
        async with session_factory() as session:
            session.add(
                LoyaltyAccount(
                    customer_id=customer_id,
                    current_punches=current_punches,
                    total_visits=total_visits,
                    threshold_override=threshold_override,
                )
            )
            await session.commit()
        return customer_id

    return _seed
