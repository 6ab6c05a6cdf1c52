"""Subscription and entitlement routes for product clients."""

from fastapi import APIRouter, Depends, HTTPException

from pantry_billing.api.deps import get_entitlements, get_trials
from pantry_billing.core.access_guard import require_capability
from pantry_billing.core.auth import ClerkUser, require_auth
from pantry_billing.domain.tiers import QuotaResource
from pantry_billing.schemas.entitlements import (
    ConsumeResponse,
    EntitlementsResponse,
    FeatureCheckResponse,
    QuotaCheckResponse,
    SubscriptionResponse,
    TrialRequest,
)
from pantry_billing.services.entitlement_service import EntitlementEngine
from pantry_billing.services.trial_service import TrialService

router = APIRouter()


@router.get("/me", response_model=EntitlementsResponse)
async def get_my_entitlements(
    user: ClerkUser = Depends(require_auth),
    engine: EntitlementEngine = Depends(get_entitlements),
):
    """Tier, limits, usage and remaining quota for the current user."""
    return EntitlementsResponse.from_entitlements(await engine.get_entitlements(user.user_id))


@router.get("/check-limit/{resource}", response_model=QuotaCheckResponse)
async def check_limit(
    resource: str,
    user: ClerkUser = Depends(require_auth),
    engine: EntitlementEngine = Depends(get_entitlements),
):
    try:
        quota = QuotaResource(resource)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown resource: {resource}")

    check = await engine.check_quota(user.user_id, quota)
    return QuotaCheckResponse(resource=quota, **check.to_dict())


@router.get("/check-feature/{feature}", response_model=FeatureCheckResponse)
async def check_feature(
    feature: str,
    user: ClerkUser = Depends(require_auth),
    engine: EntitlementEngine = Depends(get_entitlements),
):
    allowed = await engine.check_feature(user.user_id, feature)
    return FeatureCheckResponse(feature=feature, allowed=allowed)


@router.post("/trial", response_model=SubscriptionResponse)
async def start_trial(
    body: TrialRequest,
    user: ClerkUser = Depends(require_auth),
    trials: TrialService = Depends(get_trials),
):
    """Start a trial; an existing subscription is returned unchanged."""
    row = await trials.create(user.user_id, body.plan)
    return SubscriptionResponse.model_validate(row)


@router.post(
    "/ai-recipes/consume",
    response_model=ConsumeResponse,
    dependencies=[Depends(require_capability(QuotaResource.AI_RECIPES_PER_MONTH))],
)
async def consume_ai_recipe(
    user: ClerkUser = Depends(require_auth),
    engine: EntitlementEngine = Depends(get_entitlements),
):
    """Record one completed AI recipe generation against the monthly quota."""
    count = await engine.consume_ai_recipe(user.user_id)
    return ConsumeResponse(ai_recipes_this_month=count)
