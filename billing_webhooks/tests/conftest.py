import os

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from billing_webhooks.db.base import Base
from billing_webhooks.db.models import User
from billing_webhooks.services.plans import PlanCatalog
from billing_webhooks.tests.factories import (
    PRICE_PLANS,
    FakeProviderClient,
    RecordingInvalidator,
    RecordingSink,
)


@pytest.fixture
async def db_engine(tmp_path):
    """Create a database engine for the tests.

    Uses TEST_DATABASE_URL (PostgreSQL) when set, otherwise a throwaway SQLite file.
    Function-scoped to ensure it's created in the same event loop as the test.
    """
    test_db_url = os.environ.get("TEST_DATABASE_URL")
    if test_db_url:
        engine = create_async_engine(test_db_url, echo=False, future=True, pool_size=20, max_overflow=10)
    else:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'billing_test.db'}",
            echo=False,
            future=True,
            connect_args={"timeout": 30},
        )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)  # Clean slate
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def db_session_factory(db_engine):
    """Factory to create multiple sessions for concurrent tests."""
    return async_sessionmaker(
        bind=db_engine,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(db_session_factory):
    async with db_session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def seeded_users(db_session_factory):
    """user_1 has a provider customer, user_2 has never paid."""
    async with db_session_factory() as session:
        session.add_all([
            User(user_id="user_1", email="one@example.com", provider_customer_id="cus_1"),
            User(user_id="user_2", email="two@example.com"),
        ])
        await session.commit()
    return {"customer_user": "user_1", "free_user": "user_2"}


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def provider_client():
    return FakeProviderClient()


@pytest.fixture
def plan_catalog():
    return PlanCatalog(PRICE_PLANS)


@pytest.fixture
def cache_invalidator():
    return RecordingInvalidator()
