"""User provisioning on first login.

Idempotent provisioning that creates the User row and starts its trial.
Uses ON CONFLICT DO NOTHING for race-safe inserts.
"""

import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pantry_billing.core.exceptions import storage_errors
from pantry_billing.db.base import dialect_insert, utcnow
from pantry_billing.db.models.user import User
from pantry_billing.domain.tiers import LOWEST_TIER
from pantry_billing.services.trial_service import TrialService

logger = structlog.get_logger(__name__)


async def provision_user_on_first_login(
    user_id: str,
    jwt_claims: dict,
    session_factory: async_sessionmaker[AsyncSession],
    trials: TrialService,
) -> None:
    """Provision a new user on first login: insert the User row, then create the trial.

    This function is idempotent - repeat calls for the same user_id are no-ops.
    A user who already has a subscription row keeps it unchanged.

    Args:
        user_id: Clerk user ID from JWT
        jwt_claims: JWT claims dict (email is copied onto the row)
        session_factory: Session factory bound to the application database
        trials: Trial lifecycle service
    """
    now = utcnow()
    with storage_errors():
        async with session_factory() as session:
            stmt = (
                dialect_insert(session, User)
                .values(
                    id=user_id,
                    email=jwt_claims.get("email"),
                    tier=LOWEST_TIER.value,
                    ai_recipes_generated_this_month=0,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["id"])
            )
            result = await session.execute(stmt)
            await session.commit()

    if result.rowcount == 1:
        logger.info("user_provisioned", user_id=user_id)

    await trials.create(user_id, now=now)


async def provision_from_request(request: Request, user_id: str, claims: dict) -> None:
    """Provision using the services held on the application state."""
    state = request.app.state
    await provision_user_on_first_login(user_id, claims, state.session_factory, state.trials)
