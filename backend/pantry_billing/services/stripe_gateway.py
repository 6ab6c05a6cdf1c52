"""Stripe client wrapper: bounded, retried provider calls and price-to-tier resolution.

Every outbound call is bounded by ``stripe_timeout_seconds`` and retried on
connection errors. Timeouts and provider errors surface as TransientError so
webhook handling can record the event for reprocessing instead of hanging.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pantry_billing.core.config import Settings, get_settings
from pantry_billing.core.exceptions import TransientError
from pantry_billing.domain.subscription_states import PlanType, plan_type_from_interval
from pantry_billing.domain.tiers import LOWEST_TIER, Tier, coerce_tier

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PriceInfo:
    tier: Tier
    plan_type: PlanType


def stripe_value(obj: Any, name: str, default: Any = None) -> Any:
    """Read a key from a webhook dict or an attribute from a Stripe SDK object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def object_id(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return stripe_value(value, "id")


@retry(
    retry=retry_if_exception_type(stripe.APIConnectionError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "stripe_connection_error_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)
async def _call_with_retry(call: Callable[[], Awaitable[Any]], timeout: float) -> Any:
    return await asyncio.wait_for(call(), timeout=timeout)


class StripeGateway:
    """Typed facade over the stripe SDK used by billing routes and the webhook reconciler."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._price_cache: dict[str, PriceInfo] = {}

    def _configure(self) -> None:
        stripe.api_key = self._settings.stripe_secret_key

    def configured_prices(self) -> dict[str, PriceInfo]:
        """Price IDs from settings mapped to the tier and plan they sell."""
        s = self._settings
        mapping = {
            s.stripe_price_basic_monthly: PriceInfo(Tier.BASIC, PlanType.MONTHLY),
            s.stripe_price_basic_annual: PriceInfo(Tier.BASIC, PlanType.ANNUAL),
            s.stripe_price_pro_monthly: PriceInfo(Tier.PRO, PlanType.MONTHLY),
            s.stripe_price_pro_annual: PriceInfo(Tier.PRO, PlanType.ANNUAL),
        }
        return {price_id: info for price_id, info in mapping.items() if price_id}

    def price_for(self, tier: Tier, plan_type: PlanType) -> str | None:
        for price_id, info in self.configured_prices().items():
            if info == PriceInfo(tier, plan_type):
                return price_id
        return None

    async def _request(self, op: str, call: Callable[[], Awaitable[Any]]) -> Any:
        self._configure()
        try:
            return await _call_with_retry(call, self._settings.stripe_timeout_seconds)
        except TimeoutError as exc:
            logger.warning("stripe_call_timed_out", op=op, timeout=self._settings.stripe_timeout_seconds)
            raise TransientError(f"Stripe {op} timed out") from exc
        except stripe.StripeError as exc:
            logger.warning("stripe_call_failed", op=op, error=str(exc))
            raise TransientError(f"Stripe {op} failed: {type(exc).__name__}") from exc

    async def resolve_price(self, price_id: str) -> PriceInfo:
        """Resolve a price ID to its tier and billing interval, cached for the process lifetime.

        The product's ``tier`` metadata wins; otherwise the configured price map
        is consulted; otherwise the lowest tier is assumed.
        """
        cached = self._price_cache.get(price_id)
        if cached is not None:
            return cached

        price = await self._request(
            "price_retrieve",
            lambda: stripe.Price.retrieve_async(price_id, expand=["product"]),
        )
        product_metadata = stripe_value(stripe_value(price, "product"), "metadata") or {}
        metadata_tier = stripe_value(product_metadata, "tier")
        plan_type = plan_type_from_interval(stripe_value(stripe_value(price, "recurring"), "interval"))

        if metadata_tier:
            tier = coerce_tier(metadata_tier)
        elif price_id in self.configured_prices():
            tier = self.configured_prices()[price_id].tier
        else:
            logger.warning("stripe_price_tier_unknown", price_id=price_id)
            tier = LOWEST_TIER

        info = PriceInfo(tier=tier, plan_type=plan_type)
        self._price_cache[price_id] = info
        return info

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        return await self._request(
            "subscription_retrieve",
            lambda: stripe.Subscription.retrieve_async(subscription_id),
        )

    async def create_customer(self, user_id: str, email: str | None = None) -> str:
        customer = await self._request(
            "customer_create",
            lambda: stripe.Customer.create_async(email=email, metadata={"user_id": user_id}),
        )
        return customer.id

    async def create_checkout_session(self, customer_id: str, price_id: str, user_id: str) -> str:
        """Create a subscription-mode Checkout session and return its URL."""
        frontend = self._settings.frontend_url
        session = await self._request(
            "checkout_create",
            lambda: stripe.checkout.Session.create_async(
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                subscription_data={"metadata": {"user_id": user_id}},
                success_url=f"{frontend}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{frontend}/subscription/cancel",
                metadata={"user_id": user_id},
                allow_promotion_codes=True,
            ),
        )
        return session.url

    async def create_portal_session(self, customer_id: str) -> str:
        session = await self._request(
            "portal_create",
            lambda: stripe.billing_portal.Session.create_async(
                customer=customer_id,
                return_url=f"{self._settings.frontend_url}/subscription",
            ),
        )
        return session.url
