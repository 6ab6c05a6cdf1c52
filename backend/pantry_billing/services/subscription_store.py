"""Subscription record store: the single writer path for subscription rows and the user mirror.

Every write goes through one transaction that upserts the subscription row
keyed by user_id and rewrites the user's authorization mirror from the
resulting row state. Status changes are validated against the lifecycle
transition table; rejected changes are logged and skipped.
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pantry_billing.core.exceptions import NotFoundError, storage_errors
from pantry_billing.db.base import dialect_insert
from pantry_billing.db.models.subscription import Subscription
from pantry_billing.db.models.user import User
from pantry_billing.domain.subscription_states import (
    PlanType,
    SubscriptionStatus,
    can_transition,
    derive_mirror,
)
from pantry_billing.domain.tiers import LOWEST_TIER

logger = structlog.get_logger(__name__)

# Columns a reconciliation write may set; anything else is a programming error
WRITABLE_FIELDS = frozenset(
    {
        "plan_type",
        "tier",
        "current_period_start",
        "current_period_end",
        "trial_start",
        "trial_end",
        "cancel_at_period_end",
        "canceled_at",
        "stripe_customer_id",
        "stripe_subscription_id",
        "stripe_price_id",
    }
)


class SubscriptionStore:
    """Persistence for Subscription rows and the derived user mirror."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    async def get_by_user(self, user_id: str) -> Subscription | None:
        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(select(Subscription).where(Subscription.user_id == user_id))
                return result.scalar_one_or_none()

    async def get_by_customer(self, customer_id: str) -> Subscription | None:
        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(
                    select(Subscription).where(Subscription.stripe_customer_id == customer_id).limit(1)
                )
                return result.scalar_one_or_none()

    async def get_by_subscription_id(self, subscription_id: str) -> Subscription | None:
        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(
                    select(Subscription).where(Subscription.stripe_subscription_id == subscription_id).limit(1)
                )
                return result.scalar_one_or_none()

    async def apply(
        self,
        user_id: str,
        status: SubscriptionStatus,
        fields: dict[str, Any] | None = None,
        *,
        event_id: str | None = None,
        now: datetime | None = None,
    ) -> Subscription | None:
        """Upsert the user's subscription row and rewrite the mirror in one transaction.

        Args:
            user_id: Owner of the row
            status: Target lifecycle status
            fields: Column values to overwrite; omitted columns keep their stored value
            event_id: Provider event that caused the write (diagnostic only)
            now: Current time (for deterministic testing)

        Returns:
            The row after the write, or None when the transition was rejected.

        Raises:
            NotFoundError: the user does not exist
            TransientError: storage unavailable
        """
        fields = dict(fields or {})
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")
        now = now or datetime.now(UTC)

        with storage_errors():
            async with self._factory() as session:
                user = await session.get(User, user_id)
                if user is None:
                    raise NotFoundError("user", user_id)

                result = await session.execute(
                    select(Subscription).where(Subscription.user_id == user_id).with_for_update()
                )
                current = result.scalar_one_or_none()
                current_status = SubscriptionStatus(current.status) if current is not None else None

                if not can_transition(current_status, status):
                    logger.warning(
                        "subscription_transition_rejected",
                        user_id=user_id,
                        current_status=current_status,
                        target_status=status,
                        event_id=event_id,
                    )
                    await session.rollback()
                    return None

                changes = {**fields, "status": status.value, "last_event_id": event_id, "updated_at": now}
                insert_values = {
                    "user_id": user_id,
                    "tier": LOWEST_TIER.value,
                    "plan_type": PlanType.MONTHLY.value,
                    "cancel_at_period_end": False,
                    "created_at": now,
                    **changes,
                }
                stmt = (
                    dialect_insert(session, Subscription)
                    .values(**insert_values)
                    .on_conflict_do_update(index_elements=["user_id"], set_=changes)
                )
                await session.execute(stmt)

                # Mirror is derived from the merged row, not from the partial write
                tier = fields.get("tier", current.tier if current is not None else LOWEST_TIER.value)
                trial_end = fields.get("trial_end", current.trial_end if current is not None else None)
                mirror = derive_mirror(status, tier, trial_end)
                await session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(
                        tier=mirror.tier.value,
                        subscription_status=mirror.subscription_status.value,
                        trial_ends_at=mirror.trial_ends_at,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

                result = await session.execute(
                    select(Subscription)
                    .where(Subscription.user_id == user_id)
                    .execution_options(populate_existing=True)
                )
                row = result.scalar_one()

        logger.info(
            "subscription_applied",
            user_id=user_id,
            previous_status=current_status,
            status=status,
            tier=mirror.tier,
            event_id=event_id,
        )
        return row

    async def insert_if_absent(self, user_id: str, values: dict[str, Any], now: datetime | None = None) -> bool:
        """Insert a row unless the user already has one. Returns True when inserted.

        The user mirror is rewritten only when the insert took effect, so an
        existing paid row is never clobbered.
        """
        now = now or datetime.now(UTC)
        status = SubscriptionStatus(values["status"])

        with storage_errors():
            async with self._factory() as session:
                user = await session.get(User, user_id)
                if user is None:
                    raise NotFoundError("user", user_id)

                stmt = (
                    dialect_insert(session, Subscription)
                    .values(user_id=user_id, created_at=now, updated_at=now, **values)
                    .on_conflict_do_nothing(index_elements=["user_id"])
                )
                result = await session.execute(stmt)
                inserted = result.rowcount == 1

                if inserted:
                    mirror = derive_mirror(status, values.get("tier"), values.get("trial_end"))
                    await session.execute(
                        update(User)
                        .where(User.id == user_id)
                        .values(
                            tier=mirror.tier.value,
                            subscription_status=mirror.subscription_status.value,
                            trial_ends_at=mirror.trial_ends_at,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                await session.commit()

        return inserted

    async def expire_trial(self, user_id: str, now: datetime | None = None) -> bool:
        """Move a lapsed trialing row to expired and downgrade the mirror.

        Conditional on the row still being trialing with trial_end in the past;
        a row the reconciler already activated is left untouched. Returns True
        when the row was expired by this call.
        """
        now = now or datetime.now(UTC)

        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(
                    update(Subscription)
                    .where(
                        Subscription.user_id == user_id,
                        Subscription.status == SubscriptionStatus.TRIALING.value,
                        Subscription.trial_end < now,
                    )
                    .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    return False

                mirror = derive_mirror(SubscriptionStatus.EXPIRED, LOWEST_TIER.value, None)
                await session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(
                        tier=mirror.tier.value,
                        subscription_status=mirror.subscription_status.value,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

        return True

    async def find_expired_trials(self, now: datetime, limit: int = 500) -> list[str]:
        """User ids whose rows are still trialing after trial_end."""
        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(
                    select(Subscription.user_id)
                    .where(
                        Subscription.status == SubscriptionStatus.TRIALING.value,
                        Subscription.trial_end < now,
                    )
                    .order_by(Subscription.trial_end)
                    .limit(limit)
                )
                return list(result.scalars().all())
