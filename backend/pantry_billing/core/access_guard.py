"""Feature-access guard: request-path enforcement of quotas and feature flags.

Fails closed: when entitlements cannot be read the request is denied, never
let through on an unknown quota.
"""

from dataclasses import dataclass

import structlog
from fastapi import Depends, HTTPException, Request

from pantry_billing.core.auth import ClerkUser, require_auth
from pantry_billing.core.exceptions import TransientError, UpgradeInfo
from pantry_billing.domain.tiers import Feature, QuotaResource
from pantry_billing.services.entitlement_service import EntitlementEngine

logger = structlog.get_logger(__name__)

ENTITLEMENTS_UNAVAILABLE = "entitlements_unavailable"


@dataclass(frozen=True)
class AccessDecision:
    ok: bool
    upgrade: UpgradeInfo | None = None
    error: str | None = None


def _as_resource(capability: str) -> QuotaResource | None:
    try:
        return QuotaResource(capability)
    except ValueError:
        return None


class AccessGuard:
    def __init__(self, engine: EntitlementEngine):
        self.engine = engine

    async def authorize(self, user_id: str, capability: QuotaResource | Feature | str) -> AccessDecision:
        """Decide whether ``user_id`` may use ``capability`` (a quota resource or a feature name).

        NotFoundError propagates; TransientError becomes a denial.
        """
        resource = _as_resource(capability)
        try:
            if resource is not None:
                check = await self.engine.check_quota(user_id, resource)
                if check.allowed:
                    return AccessDecision(ok=True)
                user = await self.engine.usage.get_user(user_id)
                info = UpgradeInfo(
                    capability=resource.value,
                    tier=user.tier,
                    limit=check.limit,
                    remaining=check.remaining,
                )
            else:
                if await self.engine.check_feature(user_id, capability):
                    return AccessDecision(ok=True)
                user = await self.engine.usage.get_user(user_id)
                info = UpgradeInfo(capability=str(capability), tier=user.tier)
        except TransientError as exc:
            logger.warning(
                "access_denied_entitlements_unavailable",
                user_id=user_id,
                capability=str(capability),
                error=str(exc),
            )
            return AccessDecision(ok=False, error=ENTITLEMENTS_UNAVAILABLE)

        logger.info("access_denied_upgrade_required", user_id=user_id, capability=str(capability))
        return AccessDecision(ok=False, upgrade=info)


def require_capability(capability: QuotaResource | Feature | str):
    """Create a FastAPI dependency that requires a quota slot or a feature flag.

    Usage:
        @router.post("/pantry", dependencies=[Depends(require_capability(QuotaResource.PANTRY_ITEMS))])
        async def add_item():
            ...
    """

    async def dependency(request: Request, user: ClerkUser = Depends(require_auth)) -> ClerkUser:
        guard: AccessGuard = request.app.state.access_guard
        decision = await guard.authorize(user.user_id, capability)

        if decision.error is not None:
            raise HTTPException(
                status_code=503,
                detail={
                    "code": ENTITLEMENTS_UNAVAILABLE,
                    "message": "Entitlements are temporarily unavailable. Please retry.",
                },
            )
        if not decision.ok:
            raise HTTPException(
                status_code=403,
                detail={
                    "code": "upgrade_required",
                    "message": "Upgrade your plan to use this feature.",
                    "upgrade_url": "/subscription",
                    **decision.upgrade.to_detail(),
                },
            )
        return user

    return dependency
