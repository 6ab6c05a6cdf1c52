"""Subscription lifecycle states, transitions, and mirror derivation.

Pure domain functions. No DB access, fully deterministic.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from pantry_billing.domain.tiers import LOWEST_TIER, Tier, coerce_tier


class SubscriptionStatus(StrEnum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class PlanType(StrEnum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


# canceled/expired are terminal for the current cycle; a resubscribe restarts the same row
TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.TRIALING: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED}),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
    ),
    SubscriptionStatus.PAST_DUE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.CANCELED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}),
    SubscriptionStatus.EXPIRED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}),
}

# Statuses whose tier is honored; the rest mirror the lowest tier
ENTITLED_STATUSES = frozenset(
    {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)

_PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}


def can_transition(current: SubscriptionStatus | None, target: SubscriptionStatus) -> bool:
    """Whether a write moving the row from ``current`` to ``target`` is accepted.

    No current row accepts any target (first insert). Self-transitions are
    always accepted so replays and in-place period updates apply.
    """
    if current is None or current == target:
        return True
    return target in TRANSITIONS.get(current, frozenset())


def map_provider_status(status: str | None) -> SubscriptionStatus | None:
    """Map a Stripe subscription status onto the local enum.

    Returns None for statuses that are not mirrored (incomplete, paused, unknown).
    """
    if not status:
        return None
    return _PROVIDER_STATUS_MAP.get(status)


def plan_type_from_interval(interval: str | None) -> PlanType:
    return PlanType.ANNUAL if interval == "year" else PlanType.MONTHLY


@dataclass(frozen=True)
class UserMirror:
    """Denormalized authorization fields written onto the user row."""

    tier: Tier
    subscription_status: SubscriptionStatus
    trial_ends_at: datetime | None


def derive_mirror(status: SubscriptionStatus, tier: str | None, trial_end: datetime | None) -> UserMirror:
    """Project a subscription row onto the user's authorization mirror.

    past_due keeps the paid tier; only canceled/expired downgrade.
    """
    effective = coerce_tier(tier) if status in ENTITLED_STATUSES else LOWEST_TIER
    return UserMirror(tier=effective, subscription_status=status, trial_ends_at=trial_end)
