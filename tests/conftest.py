"""
Pytest configuration for Logomark API tests.
Environment must be set before any app import: settings, the plan catalog
and the Stripe client are module-level singletons.
"""

import os

from factories import TEST_USER_ID, WEBHOOK_SECRET

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = ""
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["FRONTEND_URL"] = "http://localhost:3000"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["STRIPE_STARTER_PRICE_ID"] = "price_starter"
os.environ["STRIPE_PRO_MONTHLY_PRICE_ID"] = "price_pro_monthly"
os.environ["STRIPE_PRO_YEARLY_PRICE_ID"] = "price_pro_yearly"
os.environ["STRIPE_BASE_PRICE_ID"] = "price_base"
os.environ.pop("STRIPE_PRO_PRICE_ID", None)
os.environ.pop("STRIPE_PRO_PLUS_PRICE_ID", None)

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.auth import get_current_user
from app.core.database import get_db
from app.main import app
from app.models import Base, Subscription, SubscriptionStatus
from app.schemas.auth import TokenData


@pytest.fixture
async def engine(tmp_path):
    # File database so concurrent sessions really run on separate connections
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session

@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: TokenData(user_id=TEST_USER_ID, email="test@example.com")
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()

@pytest.fixture
def make_subscription(session_factory):
    """Insert a subscription row in its own committed transaction"""
    async def _make(**overrides) -> Subscription:
        values = {
            "user_id": TEST_USER_ID,
            "stripe_customer_id": "cus_test_1",
            "stripe_subscription_id": "sub_test_1",
            "plan_type": "proMonthly",
            "status": SubscriptionStatus.ACTIVE,
            "monthly_token_limit": 50,
            "tokens_used": 0,
        }
        values.update(overrides)
        async with session_factory() as session:
            subscription = Subscription(**values)
            session.add(subscription)
            await session.commit()
            return subscription
    return _make
