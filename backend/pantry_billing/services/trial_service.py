"""Trial lifecycle: creation at signup and demotion of trials Stripe never confirmed."""

from datetime import UTC, datetime, timedelta

import structlog

from pantry_billing.db.models.subscription import Subscription
from pantry_billing.domain.subscription_states import PlanType, SubscriptionStatus
from pantry_billing.domain.tiers import TRIAL_TIER
from pantry_billing.services.entitlement_service import EntitlementEngine
from pantry_billing.services.subscription_store import SubscriptionStore

logger = structlog.get_logger(__name__)


class TrialService:
    def __init__(self, store: SubscriptionStore, engine: EntitlementEngine, trial_days: int = 7):
        self.store = store
        self.engine = engine
        self.trial_days = trial_days

    async def create(
        self,
        user_id: str,
        plan: PlanType | str = PlanType.MONTHLY,
        trial_days: int | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Start a trial for the user unless they already have a subscription row.

        Idempotent and race-safe: concurrent calls insert at most one row, and an
        existing row (trialing, paid, or lapsed) is returned unchanged.
        """
        now = now or datetime.now(UTC)
        trial_end = now + timedelta(days=trial_days if trial_days is not None else self.trial_days)

        inserted = await self.store.insert_if_absent(
            user_id,
            {
                "status": SubscriptionStatus.TRIALING.value,
                "plan_type": PlanType(plan).value,
                "tier": TRIAL_TIER.value,
                "current_period_start": now,
                "current_period_end": trial_end,
                "trial_start": now,
                "trial_end": trial_end,
                "cancel_at_period_end": False,
            },
            now=now,
        )
        if inserted:
            self.engine.invalidate(user_id)
            logger.info("trial_created", user_id=user_id, trial_end=trial_end.isoformat())
        else:
            logger.debug("trial_create_skipped_existing", user_id=user_id)

        row = await self.store.get_by_user(user_id)
        if row is None:
            raise RuntimeError(f"Subscription row for '{user_id}' missing after trial insert")
        return row

    async def expire(self, user_id: str, now: datetime | None = None) -> bool:
        """Expire a lapsed trial. Returns False when the row is no longer trialing."""
        now = now or datetime.now(UTC)
        expired = await self.store.expire_trial(user_id, now)
        if expired:
            self.engine.invalidate(user_id)
            logger.info("trial_expired", user_id=user_id)
        else:
            logger.info("trial_expire_skipped", user_id=user_id)
        return expired

    async def find_expired(self, now: datetime | None = None, limit: int = 500) -> list[str]:
        return await self.store.find_expired_trials(now or datetime.now(UTC), limit)
