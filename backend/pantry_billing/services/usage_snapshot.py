"""Usage snapshot: current consumption derived from persisted counters and collections."""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pantry_billing.core.exceptions import ConflictError, NotFoundError, storage_errors
from pantry_billing.db.models.cookware_item import CookwareItem
from pantry_billing.db.models.pantry_item import PantryItem
from pantry_billing.db.models.user import User
from pantry_billing.domain.billing_cycle import add_one_month, cycle_elapsed
from pantry_billing.domain.tiers import QuotaResource

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UsageSnapshot:
    pantry_items: int
    ai_recipes_this_month: int
    cookware_items: int

    def usage_for(self, resource: QuotaResource) -> int:
        if resource == QuotaResource.PANTRY_ITEMS:
            return self.pantry_items
        if resource == QuotaResource.AI_RECIPES_PER_MONTH:
            return self.ai_recipes_this_month
        return self.cookware_items


class UsageSnapshotProvider:
    """Reads usage counters and performs the lazy monthly counter reset.

    Every write here is a single conditional or relative UPDATE so the counter
    stays correct with many processes serving the same user.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    async def get_user(self, user_id: str) -> User:
        with storage_errors():
            async with self._factory() as session:
                user = await session.get(User, user_id)
        if user is None:
            raise NotFoundError("user", user_id)
        return user

    async def count_pantry_items(self, user_id: str) -> int:
        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(
                    select(func.count(PantryItem.id)).where(
                        PantryItem.user_id == user_id,
                        PantryItem.deleted_at.is_(None),
                    )
                )
                return result.scalar_one()

    async def count_cookware_items(self, user_id: str) -> int:
        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(
                    select(func.count(CookwareItem.id)).where(CookwareItem.user_id == user_id)
                )
                return result.scalar_one()

    async def reconcile_monthly_counter(self, user_id: str, now: datetime | None = None) -> User:
        """Zero the AI recipe counter if its cycle elapsed, then return the current user row.

        The reset is a compare-and-set on the reset instant that was read. When
        several callers observe the same elapsed cycle only one update matches;
        the others re-read the row the winner wrote.
        """
        now = now or datetime.now(UTC)
        user = await self.get_user(user_id)

        if not cycle_elapsed(user.ai_recipes_reset_date, now):
            return user

        try:
            await self._reset_counter(user_id, user.ai_recipes_reset_date, now)
            logger.info("monthly_counter_reset", user_id=user_id)
        except ConflictError:
            logger.debug("monthly_counter_reset_lost_race", user_id=user_id)

        return await self.get_user(user_id)

    async def _reset_counter(self, user_id: str, observed: datetime | None, now: datetime) -> None:
        if observed is None:
            stale = User.ai_recipes_reset_date.is_(None)
        else:
            stale = User.ai_recipes_reset_date == observed

        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(
                    update(User)
                    .where(User.id == user_id, stale)
                    .values(
                        ai_recipes_generated_this_month=0,
                        ai_recipes_reset_date=add_one_month(now),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

        if result.rowcount == 0:
            raise ConflictError(f"monthly counter for '{user_id}' already reset")

    async def increment_ai_recipes(self, user_id: str, now: datetime | None = None) -> int:
        """Add one generation to the current cycle and return the new count."""
        now = now or datetime.now(UTC)
        # Roll the cycle first so the increment is never wiped by a later reset
        await self.reconcile_monthly_counter(user_id, now)

        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(
                        ai_recipes_generated_this_month=func.coalesce(User.ai_recipes_generated_this_month, 0) + 1,
                        updated_at=now,
                    )
                    .returning(User.ai_recipes_generated_this_month)
                    .execution_options(synchronize_session=False)
                )
                new_count = result.scalar_one_or_none()
                await session.commit()

        if new_count is None:
            raise NotFoundError("user", user_id)
        return new_count

    async def snapshot(self, user_id: str, now: datetime | None = None) -> tuple[User, UsageSnapshot]:
        """Return the reconciled user row and all three usage figures."""
        user = await self.reconcile_monthly_counter(user_id, now)
        pantry = await self.count_pantry_items(user_id)
        cookware = await self.count_cookware_items(user_id)
        return user, UsageSnapshot(
            pantry_items=pantry,
            ai_recipes_this_month=user.ai_recipes_generated_this_month or 0,
            cookware_items=cookware,
        )
