"""Tests for subscription lifecycle transitions and mirror derivation."""

from datetime import UTC, datetime

import pytest

from pantry_billing.domain.subscription_states import (
    PlanType,
    SubscriptionStatus,
    can_transition,
    derive_mirror,
    map_provider_status,
    plan_type_from_interval,
)
from pantry_billing.domain.tiers import Tier

pytestmark = pytest.mark.unit

S = SubscriptionStatus


# ============================================================================
# Transition Tests
# ============================================================================


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (S.TRIALING, S.ACTIVE),
        (S.TRIALING, S.EXPIRED),
        (S.ACTIVE, S.PAST_DUE),
        (S.ACTIVE, S.CANCELED),
        (S.ACTIVE, S.EXPIRED),
        (S.PAST_DUE, S.ACTIVE),
        (S.PAST_DUE, S.CANCELED),
        (S.CANCELED, S.ACTIVE),
        (S.CANCELED, S.TRIALING),
        (S.EXPIRED, S.ACTIVE),
        (S.EXPIRED, S.TRIALING),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target) is True


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (S.TRIALING, S.PAST_DUE),
        (S.TRIALING, S.CANCELED),
        (S.ACTIVE, S.TRIALING),
        (S.PAST_DUE, S.TRIALING),
        (S.PAST_DUE, S.EXPIRED),
        (S.CANCELED, S.PAST_DUE),
        (S.EXPIRED, S.CANCELED),
    ],
)
def test_rejected_transitions(current, target):
    assert can_transition(current, target) is False


def test_self_transition_is_allowed_for_replays():
    for status in SubscriptionStatus:
        assert can_transition(status, status) is True


def test_first_write_accepts_any_status():
    for status in SubscriptionStatus:
        assert can_transition(None, status) is True


# ============================================================================
# Provider mapping
# ============================================================================


@pytest.mark.parametrize(
    ("provider", "expected"),
    [
        ("active", S.ACTIVE),
        ("trialing", S.TRIALING),
        ("past_due", S.PAST_DUE),
        ("unpaid", S.PAST_DUE),
        ("canceled", S.CANCELED),
        ("incomplete_expired", S.EXPIRED),
        ("incomplete", None),
        ("paused", None),
        (None, None),
    ],
)
def test_map_provider_status(provider, expected):
    assert map_provider_status(provider) == expected


def test_plan_type_from_interval():
    assert plan_type_from_interval("year") == PlanType.ANNUAL
    assert plan_type_from_interval("month") == PlanType.MONTHLY
    assert plan_type_from_interval(None) == PlanType.MONTHLY


# ============================================================================
# Mirror derivation
# ============================================================================


def test_past_due_keeps_paid_tier():
    mirror = derive_mirror(S.PAST_DUE, "PRO", None)
    assert mirror.tier == Tier.PRO
    assert mirror.subscription_status == S.PAST_DUE


@pytest.mark.parametrize("status", [S.CANCELED, S.EXPIRED])
def test_terminal_statuses_downgrade_to_basic(status):
    assert derive_mirror(status, "PRO", None).tier == Tier.BASIC


def test_trialing_mirror_carries_trial_end():
    trial_end = datetime(2026, 3, 22, tzinfo=UTC)
    mirror = derive_mirror(S.TRIALING, "PRO", trial_end)
    assert mirror.tier == Tier.PRO
    assert mirror.trial_ends_at == trial_end
