"""Webhook reconciler: applies Stripe events to the subscription row and user mirror.

Delivery is at-least-once. Each event is claimed in the ledger by its event ID
before any handler runs, so a replayed delivery is acknowledged without being
applied twice. Handlers run in isolation: an exception is logged, stored on
the ledger row together with the payload, and the event is retried later by
the expiration sweep.

Out-of-order delivery is not defended against beyond last-write-wins; the
event ID of the last applied write is kept on the row for diagnosis only.
"""

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pantry_billing.core.exceptions import NotFoundError, TransientError, storage_errors
from pantry_billing.db.models.stripe_event import StripeWebhookEvent
from pantry_billing.domain.subscription_states import SubscriptionStatus, map_provider_status
from pantry_billing.services.entitlement_service import EntitlementEngine
from pantry_billing.services.stripe_gateway import StripeGateway, object_id, stripe_value
from pantry_billing.services.subscription_store import SubscriptionStore

logger = structlog.get_logger(__name__)

# A claim older than this with no outcome belongs to a crashed worker
STALE_PROCESSING_AFTER = timedelta(minutes=15)


class EventStatus(StrEnum):
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class EventOutcome(StrEnum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    FAILED = "failed"


def _from_unix(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _first_item(subscription: Any) -> Any:
    items = stripe_value(stripe_value(subscription, "items"), "data") or []
    return items[0] if items else None


def _metadata_user_id(obj: Any) -> str | None:
    metadata = stripe_value(obj, "metadata") or {}
    return stripe_value(metadata, "user_id") or stripe_value(metadata, "userId")


def _invoice_subscription_id(invoice: Any) -> str | None:
    """Invoice subscription reference, from the top level or the newer parent details block."""
    direct = object_id(stripe_value(invoice, "subscription"))
    if direct:
        return direct
    details = stripe_value(stripe_value(invoice, "parent"), "subscription_details")
    return object_id(stripe_value(details, "subscription"))


class WebhookReconciler:
    """Consumes decoded Stripe events and reconciles local subscription state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: SubscriptionStore,
        gateway: StripeGateway,
        engine: EntitlementEngine,
        max_attempts: int = 5,
    ):
        self._factory = session_factory
        self.store = store
        self.gateway = gateway
        self.engine = engine
        self.max_attempts = max_attempts
        self._handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

    # ── Ledger ──────────────────────────────────────────────────────

    async def _claim_event(self, event: dict, now: datetime) -> bool:
        """Return True if event is new (claimed). False if duplicate."""
        with storage_errors():
            async with self._factory() as session:
                try:
                    session.add(
                        StripeWebhookEvent(
                            event_id=event["id"],
                            event_type=event.get("type"),
                            status=EventStatus.PROCESSING.value,
                            payload=event,
                            attempts=1,
                            received_at=now,
                        )
                    )
                    await session.commit()
                    return True
                except IntegrityError:
                    await session.rollback()
                    return False

    async def _reclaim(self, row: StripeWebhookEvent, now: datetime) -> bool:
        """Compare-and-set a failed or stale claim back to processing."""
        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(
                    update(StripeWebhookEvent)
                    .where(
                        StripeWebhookEvent.event_id == row.event_id,
                        StripeWebhookEvent.status == row.status,
                        StripeWebhookEvent.attempts == row.attempts,
                    )
                    .values(status=EventStatus.PROCESSING.value, attempts=row.attempts + 1, received_at=now)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        return result.rowcount == 1

    async def _mark(self, event_id: str, status: EventStatus, error: str | None = None) -> None:
        with storage_errors():
            async with self._factory() as session:
                await session.execute(
                    update(StripeWebhookEvent)
                    .where(StripeWebhookEvent.event_id == event_id)
                    .values(status=status.value, error=error, processed_at=datetime.now(UTC))
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

    # ── Entry points ────────────────────────────────────────────────

    async def handle_event(self, event: dict, now: datetime | None = None) -> EventOutcome:
        """Claim and apply one verified event.

        Never raises for handler failures; storage failures while claiming
        propagate as TransientError so the delivery is retried by Stripe.
        """
        now = now or datetime.now(UTC)
        event_id = event["id"]

        if not await self._claim_event(event, now):
            logger.info("stripe_duplicate_event_ignored", event_id=event_id)
            return EventOutcome.DUPLICATE

        return await self._process(event)

    async def reprocess_failed(self, now: datetime | None = None, limit: int = 100) -> int:
        """Replay failed and stale events from the ledger. Returns how many now succeeded."""
        now = now or datetime.now(UTC)
        with storage_errors():
            async with self._factory() as session:
                result = await session.execute(
                    select(StripeWebhookEvent)
                    .where(
                        StripeWebhookEvent.attempts < self.max_attempts,
                        StripeWebhookEvent.payload.is_not(None),
                        or_(
                            StripeWebhookEvent.status == EventStatus.FAILED.value,
                            (StripeWebhookEvent.status == EventStatus.PROCESSING.value)
                            & (StripeWebhookEvent.received_at < now - STALE_PROCESSING_AFTER),
                        ),
                    )
                    .order_by(StripeWebhookEvent.received_at)
                    .limit(limit)
                )
                rows = list(result.scalars().all())

        succeeded = 0
        for row in rows:
            if not await self._reclaim(row, now):
                continue
            logger.info("stripe_event_reprocessing", event_id=row.event_id, attempt=row.attempts + 1)
            if await self._process(row.payload) == EventOutcome.PROCESSED:
                succeeded += 1
        return succeeded

    async def _process(self, event: dict) -> EventOutcome:
        event_id = event["id"]
        event_type = event.get("type")
        handler = self._handlers.get(event_type)

        if handler is None:
            logger.debug("stripe_event_type_unhandled", event_id=event_id, event_type=event_type)
            await self._mark(event_id, EventStatus.PROCESSED)
            return EventOutcome.IGNORED

        data = (event.get("data") or {}).get("object") or {}
        try:
            await handler(data, event_id)
        except NotFoundError as exc:
            # Unknown user or subscription: retrying cannot help
            logger.warning("webhook_event_unresolved", event_id=event_id, event_type=event_type, error=str(exc))
            await self._mark(event_id, EventStatus.PROCESSED, error=str(exc))
            return EventOutcome.IGNORED
        except Exception as exc:
            logger.exception("webhook_event_failed", event_id=event_id, event_type=event_type)
            try:
                await self._mark(event_id, EventStatus.FAILED, error=f"{type(exc).__name__}: {exc}")
            except TransientError:
                # The claim stays processing and is replayed once it goes stale
                logger.error("webhook_event_mark_failed", event_id=event_id, exc_info=True)
            return EventOutcome.FAILED

        await self._mark(event_id, EventStatus.PROCESSED)
        logger.info("webhook_event_processed", event_id=event_id, event_type=event_type)
        return EventOutcome.PROCESSED

    # ── Resolution helpers ──────────────────────────────────────────

    async def _resolve_user(
        self,
        obj: Any,
        customer_id: str | None,
        subscription_id: str | None,
    ) -> str:
        """Event metadata first, then the existing row by customer, then by subscription."""
        user_id = _metadata_user_id(obj)
        if user_id:
            return user_id
        if customer_id:
            row = await self.store.get_by_customer(customer_id)
            if row is not None:
                return row.user_id
        if subscription_id:
            row = await self.store.get_by_subscription_id(subscription_id)
            if row is not None:
                return row.user_id
        raise NotFoundError("subscription owner", customer_id or subscription_id or "unknown")

    async def _subscription_fields(self, subscription: Any) -> dict[str, Any]:
        """Full row state re-derived from a provider subscription object."""
        item = _first_item(subscription)
        price_id = object_id(stripe_value(item, "price"))
        fields: dict[str, Any] = {
            "stripe_customer_id": object_id(stripe_value(subscription, "customer")),
            "stripe_subscription_id": stripe_value(subscription, "id"),
            "stripe_price_id": price_id,
            # Newer API versions carry period bounds on the item
            "current_period_start": _from_unix(
                stripe_value(subscription, "current_period_start") or stripe_value(item, "current_period_start")
            ),
            "current_period_end": _from_unix(
                stripe_value(subscription, "current_period_end") or stripe_value(item, "current_period_end")
            ),
            "trial_start": _from_unix(stripe_value(subscription, "trial_start")),
            "trial_end": _from_unix(stripe_value(subscription, "trial_end")),
            "cancel_at_period_end": bool(stripe_value(subscription, "cancel_at_period_end", False)),
            "canceled_at": _from_unix(stripe_value(subscription, "canceled_at")),
        }
        if price_id:
            info = await self.gateway.resolve_price(price_id)
            fields["tier"] = info.tier.value
            fields["plan_type"] = info.plan_type.value
        return fields

    async def _apply(self, user_id: str, status: SubscriptionStatus, fields: dict, event_id: str) -> None:
        await self.store.apply(user_id, status, fields, event_id=event_id)
        self.engine.invalidate(user_id)

    # ── Handlers ────────────────────────────────────────────────────

    async def _handle_checkout_completed(self, session_data: Any, event_id: str) -> None:
        if stripe_value(session_data, "mode") != "subscription":
            logger.info("checkout_not_subscription_skipped", event_id=event_id)
            return

        customer_id = object_id(stripe_value(session_data, "customer"))
        subscription_id = object_id(stripe_value(session_data, "subscription"))
        if not customer_id or not subscription_id:
            logger.warning("checkout_completed_missing_ids", event_id=event_id)
            return

        user_id = await self._resolve_user(session_data, customer_id, subscription_id)
        subscription = await self.gateway.retrieve_subscription(subscription_id)
        fields = await self._subscription_fields(subscription)
        status = map_provider_status(stripe_value(subscription, "status"))
        if status not in (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE):
            # A completed checkout is a confirmed purchase
            status = SubscriptionStatus.ACTIVE
        await self._apply(user_id, status, fields, event_id)

    async def _handle_subscription_changed(self, subscription: Any, event_id: str) -> None:
        status = map_provider_status(stripe_value(subscription, "status"))
        if status is None:
            logger.info(
                "subscription_status_not_mirrored",
                event_id=event_id,
                provider_status=stripe_value(subscription, "status"),
            )
            return

        customer_id = object_id(stripe_value(subscription, "customer"))
        user_id = await self._resolve_user(subscription, customer_id, stripe_value(subscription, "id"))
        fields = await self._subscription_fields(subscription)
        await self._apply(user_id, status, fields, event_id)

    async def _handle_subscription_deleted(self, subscription: Any, event_id: str) -> None:
        customer_id = object_id(stripe_value(subscription, "customer"))
        user_id = await self._resolve_user(subscription, customer_id, stripe_value(subscription, "id"))

        status = (
            SubscriptionStatus.CANCELED
            if stripe_value(subscription, "status") == "canceled"
            else SubscriptionStatus.EXPIRED
        )
        canceled_at = _from_unix(stripe_value(subscription, "canceled_at")) or datetime.now(UTC)
        await self._apply(user_id, status, {"canceled_at": canceled_at}, event_id)

    async def _handle_invoice_paid(self, invoice: Any, event_id: str) -> None:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("invoice_not_subscription_skipped", event_id=event_id)
            return

        customer_id = object_id(stripe_value(invoice, "customer"))
        user_id = await self._resolve_user(invoice, customer_id, subscription_id)
        subscription = await self.gateway.retrieve_subscription(subscription_id)
        fields = await self._subscription_fields(subscription)
        await self._apply(user_id, SubscriptionStatus.ACTIVE, fields, event_id)

    async def _handle_payment_failed(self, invoice: Any, event_id: str) -> None:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("invoice_not_subscription_skipped", event_id=event_id)
            return

        customer_id = object_id(stripe_value(invoice, "customer"))
        user_id = await self._resolve_user(invoice, customer_id, subscription_id)
        # Status only; the paid tier is kept while past_due
        await self._apply(user_id, SubscriptionStatus.PAST_DUE, {}, event_id)
