"""Tests for quota and feature checks, including the product scenarios."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from pantry_billing.core.exceptions import NotFoundError, TransientError
from pantry_billing.db.models import User
from pantry_billing.domain.tiers import QuotaResource, Tier, TierLimits, limits_for
from pantry_billing.services.entitlement_service import evaluate_quota
from pantry_billing.services.quota_cache import QuotaCheck

pytestmark = pytest.mark.integration

NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC)


async def _set_tier(session_factory, user_id: str, tier: str) -> None:
    async with session_factory() as session:
        await session.execute(update(User).where(User.id == user_id).values(tier=tier))
        await session.commit()


# ============================================================================
# Quota arithmetic
# ============================================================================


@pytest.mark.unit
@pytest.mark.parametrize("used", [0, 1, 24, 25, 26, 100])
def test_finite_limit_allows_strictly_below_limit(used):
    check = evaluate_quota(limits_for(Tier.BASIC), QuotaResource.PANTRY_ITEMS, used)
    assert check.allowed is (used < 25)
    assert check.remaining == max(0, 25 - used)
    assert check.limit == 25


@pytest.mark.unit
@pytest.mark.parametrize("used", [0, 25, 10_000])
def test_unlimited_tier_always_allows(used):
    check = evaluate_quota(limits_for(Tier.PRO), QuotaResource.PANTRY_ITEMS, used)
    assert check == QuotaCheck(allowed=True, remaining="unlimited", limit="unlimited")


@pytest.mark.unit
def test_evaluate_quota_uses_resource_specific_limit():
    limits = TierLimits(3, 1, 2, False, False, False, False, False)
    assert evaluate_quota(limits, QuotaResource.COOKWARE_ITEMS, 1).remaining == 1
    assert evaluate_quota(limits, QuotaResource.AI_RECIPES_PER_MONTH, 1).allowed is False


# ============================================================================
# Scenarios
# ============================================================================


async def test_basic_user_at_pantry_limit_is_denied(make_user, entitlements):
    await make_user(tier="BASIC", pantry_items=25)

    check = await entitlements.check_quota("user_1", QuotaResource.PANTRY_ITEMS, NOW)

    assert check.to_dict() == {"allowed": False, "remaining": 0, "limit": 25}


async def test_upgrade_mid_cycle_unlocks_unlimited_without_reset(make_user, entitlements, session_factory, load_user):
    reset_at = NOW + timedelta(days=9)
    await make_user(tier="BASIC", pantry_items=25, ai_recipes=3, reset_at=reset_at)
    assert (await entitlements.check_quota("user_1", "pantryItems", NOW)).allowed is False

    await _set_tier(session_factory, "user_1", "PRO")
    entitlements.invalidate("user_1")

    check = await entitlements.check_quota("user_1", "pantryItems", NOW)
    assert check.to_dict() == {"allowed": True, "remaining": "unlimited", "limit": "unlimited"}
    user = await load_user()
    assert user.ai_recipes_generated_this_month == 3
    assert user.ai_recipes_reset_date == reset_at


async def test_cookware_quota_counts_collection(make_user, entitlements):
    await make_user(cookware_items=2)

    check = await entitlements.check_quota("user_1", QuotaResource.COOKWARE_ITEMS, NOW)

    assert check == QuotaCheck(allowed=True, remaining=3, limit=5)


async def test_ai_quota_reconciles_elapsed_cycle_before_checking(make_user, entitlements):
    await make_user(ai_recipes=5, reset_at=NOW - timedelta(minutes=1))

    check = await entitlements.check_quota("user_1", QuotaResource.AI_RECIPES_PER_MONTH, NOW)

    assert check == QuotaCheck(allowed=True, remaining=5, limit=5)


async def test_ai_quota_exhausted_within_cycle(make_user, entitlements):
    await make_user(ai_recipes=5, reset_at=NOW + timedelta(days=1))

    check = await entitlements.check_quota("user_1", QuotaResource.AI_RECIPES_PER_MONTH, NOW)

    assert check.allowed is False
    assert check.remaining == 0


# ============================================================================
# Cache behaviour
# ============================================================================


async def test_check_quota_is_served_from_cache(make_user, entitlements, session_factory):
    await make_user(pantry_items=1)
    first = await entitlements.check_quota("user_1", QuotaResource.PANTRY_ITEMS, NOW)

    await _set_tier(session_factory, "user_1", "PRO")

    assert await entitlements.check_quota("user_1", QuotaResource.PANTRY_ITEMS, NOW) == first


async def test_consume_invalidates_cached_answer(make_user, entitlements):
    await make_user(ai_recipes=4, reset_at=NOW + timedelta(days=1))
    before = await entitlements.check_quota("user_1", QuotaResource.AI_RECIPES_PER_MONTH, NOW)
    assert before.remaining == 1

    assert await entitlements.consume_ai_recipe("user_1", NOW) == 5

    after = await entitlements.check_quota("user_1", QuotaResource.AI_RECIPES_PER_MONTH, NOW)
    assert after == QuotaCheck(allowed=False, remaining=0, limit=5)


async def test_consume_during_pending_check_is_not_cached(make_user, entitlements, monkeypatch):
    await make_user(ai_recipes=4, reset_at=NOW + timedelta(days=10))
    reconcile = entitlements.usage.reconcile_monthly_counter

    async def reconcile_then_consume(user_id, now=None):
        user = await reconcile(user_id, now)
        monkeypatch.setattr(entitlements.usage, "reconcile_monthly_counter", reconcile)
        await entitlements.consume_ai_recipe(user_id, now)
        return user

    monkeypatch.setattr(entitlements.usage, "reconcile_monthly_counter", reconcile_then_consume)

    pending = await entitlements.check_quota("user_1", QuotaResource.AI_RECIPES_PER_MONTH, NOW)
    assert pending.remaining == 1

    check = await entitlements.check_quota("user_1", QuotaResource.AI_RECIPES_PER_MONTH, NOW)
    assert check == QuotaCheck(allowed=False, remaining=0, limit=5)


async def test_cached_ai_denial_ends_at_reset_instant(make_user, entitlements, load_user):
    reset_at = NOW + timedelta(seconds=1)
    await make_user(ai_recipes=5, reset_at=reset_at)

    before = await entitlements.check_quota("user_1", QuotaResource.AI_RECIPES_PER_MONTH, NOW)
    assert before.allowed is False

    after = await entitlements.check_quota(
        "user_1", QuotaResource.AI_RECIPES_PER_MONTH, reset_at + timedelta(seconds=1)
    )
    assert after == QuotaCheck(allowed=True, remaining=5, limit=5)
    user = await load_user()
    assert user.ai_recipes_generated_this_month == 0
    assert user.ai_recipes_reset_date > reset_at


# ============================================================================
# Trial window
# ============================================================================


async def test_lapsed_trial_reads_as_basic_before_sweep(make_user, entitlements, load_user):
    await make_user(tier="PRO", status="trialing", trial_ends_at=NOW - timedelta(hours=1), pantry_items=30)

    check = await entitlements.check_quota("user_1", QuotaResource.PANTRY_ITEMS, NOW)
    assert check == QuotaCheck(allowed=False, remaining=0, limit=25)
    assert await entitlements.check_feature("user_1", "recipeScanning", NOW) is False
    ent = await entitlements.get_entitlements("user_1", NOW)
    assert ent.tier == Tier.BASIC
    assert ent.remaining["pantryItems"] == 0

    user = await load_user()
    assert (user.tier, user.subscription_status) == ("PRO", "trialing")


async def test_cached_trial_answer_ends_at_trial_end(make_user, entitlements):
    trial_end = NOW + timedelta(minutes=1)
    await make_user(tier="PRO", status="trialing", trial_ends_at=trial_end, pantry_items=30)

    during = await entitlements.check_quota("user_1", QuotaResource.PANTRY_ITEMS, NOW)
    assert during.remaining == "unlimited"

    after = await entitlements.check_quota("user_1", QuotaResource.PANTRY_ITEMS, trial_end)
    assert after.allowed is False


async def test_active_trial_keeps_pro_features(make_user, entitlements):
    await make_user(tier="PRO", status="trialing", trial_ends_at=NOW + timedelta(days=3))

    assert await entitlements.check_feature("user_1", "recipeScanning", NOW) is True

# ============================================================================
# Features and snapshot
# ============================================================================


async def test_check_feature_follows_tier(make_user, entitlements):
    await make_user(user_id="basic", tier="BASIC")
    await make_user(user_id="pro", tier="PRO")

    assert await entitlements.check_feature("basic", "recipeScanning") is False
    assert await entitlements.check_feature("pro", "recipeScanning") is True
    assert await entitlements.check_feature("pro", "timeTravel") is False


async def test_get_entitlements_snapshot(make_user, entitlements):
    await make_user(tier="BASIC", pantry_items=20, ai_recipes=2, reset_at=NOW + timedelta(days=5), cookware_items=5)

    ent = await entitlements.get_entitlements("user_1", NOW)

    assert ent.tier == Tier.BASIC
    assert ent.remaining == {"pantryItems": 5, "aiRecipesPerMonth": 3, "cookwareItems": 0}
    assert ent.usage.pantry_items == 20


# ============================================================================
# Failure semantics
# ============================================================================


async def test_missing_user_is_not_found(entitlements):
    with pytest.raises(NotFoundError):
        await entitlements.check_quota("ghost", QuotaResource.PANTRY_ITEMS, NOW)


async def test_unknown_resource_is_rejected(make_user, entitlements):
    await make_user()
    with pytest.raises(ValueError):
        await entitlements.check_quota("user_1", "spaceships", NOW)


async def test_storage_failure_is_transient(make_user, entitlements, monkeypatch):
    await make_user()
    monkeypatch.setattr(
        entitlements.usage,
        "_factory",
        MagicMock(side_effect=OperationalError("SELECT 1", {}, Exception("db down"))),
    )

    with pytest.raises(TransientError):
        await entitlements.check_quota("user_1", QuotaResource.PANTRY_ITEMS, NOW)
