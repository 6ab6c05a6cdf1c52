"""Pydantic schemas for entitlement, trial, and billing endpoints."""

from dataclasses import asdict
from datetime import datetime

from pydantic import BaseModel, Field

from pantry_billing.domain.subscription_states import PlanType
from pantry_billing.domain.tiers import QuotaResource, Tier, TierLimits
from pantry_billing.services.entitlement_service import Entitlements


class QuotaCheckResponse(BaseModel):
    resource: QuotaResource
    allowed: bool
    remaining: int | str = Field(..., description="Units left this cycle, or 'unlimited'")
    limit: int | str


class FeatureCheckResponse(BaseModel):
    feature: str
    allowed: bool


class LimitsResponse(BaseModel):
    """Catalog entry for the user's tier; -1 means unlimited."""

    max_pantry_items: int
    max_ai_recipes_per_month: int
    max_cookware_items: int
    can_use_recipe_scanning: bool
    can_use_bulk_scanning: bool
    can_use_ai_kitchen_assistant: bool
    can_customize_storage_areas: bool
    can_use_weekly_meal_prepping: bool

    @classmethod
    def from_limits(cls, limits: TierLimits) -> "LimitsResponse":
        return cls(**asdict(limits))


class UsageResponse(BaseModel):
    pantry_items: int
    ai_recipes_this_month: int
    cookware_items: int


class EntitlementsResponse(BaseModel):
    tier: Tier
    status: str | None
    limits: LimitsResponse
    usage: UsageResponse
    remaining: dict[str, int | str]
    trial_ends_at: datetime | None = None

    @classmethod
    def from_entitlements(cls, ent: Entitlements) -> "EntitlementsResponse":
        return cls(
            tier=ent.tier,
            status=ent.status,
            limits=LimitsResponse.from_limits(ent.limits),
            usage=UsageResponse(
                pantry_items=ent.usage.pantry_items,
                ai_recipes_this_month=ent.usage.ai_recipes_this_month,
                cookware_items=ent.usage.cookware_items,
            ),
            remaining=ent.remaining,
            trial_ends_at=ent.trial_ends_at,
        )


class TrialRequest(BaseModel):
    plan: PlanType = PlanType.MONTHLY


class SubscriptionResponse(BaseModel):
    status: str
    plan_type: str
    tier: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False

    model_config = {"from_attributes": True}


class ConsumeResponse(BaseModel):
    ai_recipes_this_month: int


class CheckoutRequest(BaseModel):
    tier: Tier = Tier.PRO
    interval: PlanType = PlanType.MONTHLY


class CheckoutResponse(BaseModel):
    checkout_url: str


class PortalResponse(BaseModel):
    portal_url: str
