"""Shared test fixtures: SQLite-backed storage, seeded users, and the service graph."""

from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import pantry_billing.db.models  # noqa: F401
from pantry_billing.core.config import Settings
from pantry_billing.db.base import Base
from pantry_billing.db.models import CookwareItem, PantryItem, User
from pantry_billing.services.entitlement_service import EntitlementEngine
from pantry_billing.services.quota_cache import QuotaCache
from pantry_billing.services.stripe_gateway import StripeGateway
from pantry_billing.services.subscription_store import SubscriptionStore
from pantry_billing.services.trial_service import TrialService
from pantry_billing.services.usage_snapshot import UsageSnapshotProvider
from pantry_billing.services.webhook_reconciler import WebhookReconciler


PRICE_BASIC_MONTHLY = "price_basic_mo"
PRICE_BASIC_ANNUAL = "price_basic_yr"
PRICE_PRO_MONTHLY = "price_pro_mo"
PRICE_PRO_ANNUAL = "price_pro_yr"


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        debug=True,
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test_dummy",
        stripe_price_basic_monthly=PRICE_BASIC_MONTHLY,
        stripe_price_basic_annual=PRICE_BASIC_ANNUAL,
        stripe_price_pro_monthly=PRICE_PRO_MONTHLY,
        stripe_price_pro_annual=PRICE_PRO_ANNUAL,
        stripe_timeout_seconds=0.2,
    )


@pytest.fixture
async def db_engine(tmp_path) -> AsyncEngine:
    """File-backed SQLite engine so concurrent sessions get separate connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def make_user(session_factory):
    """Insert a user row, optionally with live pantry and cookware items."""

    async def _make(
        user_id: str = "user_1",
        tier: str = "BASIC",
        status: str | None = None,
        ai_recipes: int = 0,
        reset_at: datetime | None = None,
        pantry_items: int = 0,
        cookware_items: int = 0,
        trial_ends_at: datetime | None = None,
    ) -> User:
        async with session_factory() as session:
            user = User(
                id=user_id,
                email=f"{user_id}@example.com",
                tier=tier,
                subscription_status=status,
                ai_recipes_generated_this_month=ai_recipes,
                ai_recipes_reset_date=reset_at,
                trial_ends_at=trial_ends_at,
            )
            session.add(user)
            session.add_all(PantryItem(user_id=user_id, name=f"item-{i}") for i in range(pantry_items))
            session.add_all(CookwareItem(user_id=user_id, name=f"pan-{i}") for i in range(cookware_items))
            await session.commit()
            return user

    return _make


@pytest.fixture
def load_user(session_factory):
    async def _load(user_id: str = "user_1") -> User:
        async with session_factory() as session:
            return await session.get(User, user_id)

    return _load


@pytest.fixture
def quota_cache() -> QuotaCache:
    return QuotaCache(ttl_seconds=30)


@pytest.fixture
def usage(session_factory) -> UsageSnapshotProvider:
    return UsageSnapshotProvider(session_factory)


@pytest.fixture
def entitlements(usage, quota_cache) -> EntitlementEngine:
    return EntitlementEngine(usage, quota_cache)


@pytest.fixture
def store(session_factory) -> SubscriptionStore:
    return SubscriptionStore(session_factory)


@pytest.fixture
def trials(store, entitlements) -> TrialService:
    return TrialService(store, entitlements, trial_days=7)


@pytest.fixture
def gateway(test_settings) -> StripeGateway:
    return StripeGateway(test_settings)


@pytest.fixture
def reconciler(session_factory, store, gateway, entitlements) -> WebhookReconciler:
    return WebhookReconciler(session_factory, store, gateway, entitlements, max_attempts=3)
