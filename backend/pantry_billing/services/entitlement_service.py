"""EntitlementEngine: quota and feature checks for product flows.

check_quota and check_feature have no side effects beyond the lazy monthly
counter reset. consume_ai_recipe is the only operation that mutates usage and
must run only after a generation succeeded.

A trial whose end has passed is read as the lowest tier even before the
expiration sweep rewrites the row.

Errors: a missing user raises NotFoundError; database failures raise
TransientError and callers must deny the gated action.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from pantry_billing.db.models.user import User
from pantry_billing.domain.subscription_states import SubscriptionStatus
from pantry_billing.domain.tiers import (
    LOWEST_TIER,
    QuotaResource,
    Tier,
    TierLimits,
    coerce_tier,
    is_unlimited,
    limits_for,
)
from pantry_billing.services.quota_cache import QuotaCache, QuotaCheck
from pantry_billing.services.usage_snapshot import UsageSnapshot, UsageSnapshotProvider

logger = structlog.get_logger(__name__)

UNLIMITED_LABEL = "unlimited"


def evaluate_quota(limits: TierLimits, resource: QuotaResource, usage: int) -> QuotaCheck:
    """Compare usage against a tier ceiling."""
    limit = limits.limit_for(resource)
    if is_unlimited(limit):
        return QuotaCheck(allowed=True, remaining=UNLIMITED_LABEL, limit=UNLIMITED_LABEL)
    return QuotaCheck(allowed=usage < limit, remaining=max(0, limit - usage), limit=limit)


def _in_trial(user: User) -> bool:
    return user.subscription_status == SubscriptionStatus.TRIALING.value and user.trial_ends_at is not None


def effective_tier(user: User, now: datetime) -> Tier:
    """The tier the user is entitled to right now.

    Read-only: a lapsed trial is reported as the lowest tier but the row is
    left for the expiration sweep to rewrite.
    """
    if _in_trial(user) and now >= user.trial_ends_at:
        return LOWEST_TIER
    return coerce_tier(user.tier)


def _answer_valid_until(user: User, resource: QuotaResource, now: datetime) -> datetime | None:
    """Earliest instant at which a cached answer for ``resource`` stops being true."""
    bounds = []
    if resource == QuotaResource.AI_RECIPES_PER_MONTH and user.ai_recipes_reset_date is not None:
        bounds.append(user.ai_recipes_reset_date)
    if _in_trial(user) and now < user.trial_ends_at:
        bounds.append(user.trial_ends_at)
    return min(bounds) if bounds else None


@dataclass(frozen=True)
class Entitlements:
    tier: Tier
    status: str | None
    limits: TierLimits
    usage: UsageSnapshot
    remaining: dict[str, int | str] = field(default_factory=dict)
    trial_ends_at: datetime | None = None


class EntitlementEngine:
    """Public quota and feature API composed of catalog, usage provider, and cache."""

    def __init__(self, usage: UsageSnapshotProvider, cache: QuotaCache):
        self.usage = usage
        self.cache = cache

    async def check_quota(
        self,
        user_id: str,
        resource: QuotaResource | str,
        now: datetime | None = None,
    ) -> QuotaCheck:
        """Return whether the user may add one more unit of ``resource``.

        Args:
            user_id: User identifier
            resource: pantryItems, aiRecipesPerMonth, or cookwareItems
            now: Current time (for deterministic testing)

        Raises:
            ValueError: unknown resource name
            NotFoundError: no such user
            TransientError: storage unavailable
        """
        resource = QuotaResource(resource)
        now = now or datetime.now(UTC)
        cached = self.cache.get(user_id, resource, now)
        if cached is not None:
            return cached

        generation = self.cache.generation(user_id)
        if resource == QuotaResource.AI_RECIPES_PER_MONTH:
            user = await self.usage.reconcile_monthly_counter(user_id, now)
            used = user.ai_recipes_generated_this_month or 0
        else:
            user = await self.usage.get_user(user_id)
            if resource == QuotaResource.PANTRY_ITEMS:
                used = await self.usage.count_pantry_items(user_id)
            else:
                used = await self.usage.count_cookware_items(user_id)

        result = evaluate_quota(limits_for(effective_tier(user, now)), resource, used)
        if not self.cache.set(
            user_id, resource, result, generation=generation, valid_until=_answer_valid_until(user, resource, now)
        ):
            logger.debug("quota_answer_not_cached", user_id=user_id, resource=resource.value)
        return result

    async def check_feature(self, user_id: str, feature: str, now: datetime | None = None) -> bool:
        """Return the tier's flag for ``feature``; unknown features are never entitled."""
        user = await self.usage.get_user(user_id)
        return limits_for(effective_tier(user, now or datetime.now(UTC))).allows(feature)

    async def consume_ai_recipe(self, user_id: str, now: datetime | None = None) -> int:
        """Record one completed AI recipe generation. Returns the new monthly count."""
        count = await self.usage.increment_ai_recipes(user_id, now)
        self.cache.invalidate(user_id)
        logger.info("ai_recipe_consumed", user_id=user_id, count=count)
        return count

    async def get_entitlements(self, user_id: str, now: datetime | None = None) -> Entitlements:
        """Full entitlement snapshot: tier, limits, usage, and remaining quota."""
        now = now or datetime.now(UTC)
        user, usage = await self.usage.snapshot(user_id, now)
        tier = effective_tier(user, now)
        limits = limits_for(tier)
        remaining = {
            resource.value: evaluate_quota(limits, resource, usage.usage_for(resource)).remaining
            for resource in QuotaResource
        }
        return Entitlements(
            tier=tier,
            status=user.subscription_status,
            limits=limits,
            usage=usage,
            remaining=remaining,
            trial_ends_at=user.trial_ends_at,
        )

    def invalidate(self, user_id: str) -> None:
        """Drop cached answers after anything that changes the user's tier or usage."""
        self.cache.invalidate(user_id)
