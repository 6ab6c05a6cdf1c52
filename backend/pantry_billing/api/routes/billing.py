"""Billing routes: Stripe Checkout, Customer Portal, and webhooks."""

import json

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from pantry_billing.api.deps import get_gateway, get_reconciler, get_store
from pantry_billing.core.auth import ClerkUser, require_auth
from pantry_billing.core.config import get_settings
from pantry_billing.schemas.entitlements import (
    CheckoutRequest,
    CheckoutResponse,
    PortalResponse,
)
from pantry_billing.services.stripe_gateway import StripeGateway
from pantry_billing.services.subscription_store import SubscriptionStore
from pantry_billing.services.webhook_reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/billing/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    user: ClerkUser = Depends(require_auth),
    gateway: StripeGateway = Depends(get_gateway),
    store: SubscriptionStore = Depends(get_store),
):
    """Create a Stripe Checkout session and return the URL.

    The subscription row is not touched here; the resulting webhook events
    record the customer and subscription.
    """
    price_id = gateway.price_for(body.tier, body.interval)
    if not price_id:
        raise HTTPException(status_code=400, detail=f"Invalid plan/interval: {body.tier}/{body.interval}")

    existing = await store.get_by_user(user.user_id)
    customer_id = existing.stripe_customer_id if existing is not None else None
    if not customer_id:
        customer_id = await gateway.create_customer(user.user_id, user.claims.get("email"))

    checkout_url = await gateway.create_checkout_session(customer_id, price_id, user.user_id)
    logger.info("checkout_session_created", user_id=user.user_id, tier=body.tier, interval=body.interval)
    return CheckoutResponse(checkout_url=checkout_url)


@router.post("/billing/portal", response_model=PortalResponse)
async def create_portal_session(
    user: ClerkUser = Depends(require_auth),
    gateway: StripeGateway = Depends(get_gateway),
    store: SubscriptionStore = Depends(get_store),
):
    """Create a Stripe Customer Portal session and return the URL."""
    existing = await store.get_by_user(user.user_id)
    if existing is None or not existing.stripe_customer_id:
        raise HTTPException(status_code=400, detail="No billing account found. Please subscribe first.")

    portal_url = await gateway.create_portal_session(existing.stripe_customer_id)
    return PortalResponse(portal_url=portal_url)


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, reconciler: WebhookReconciler = Depends(get_reconciler)):
    """Handle Stripe webhook events with signature verification.

    Once the signature is verified the delivery is always acknowledged; events
    whose handler failed are kept in the ledger and replayed by the sweep.
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    body = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        stripe.Webhook.construct_event(body, sig_header, settings.stripe_webhook_secret)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    event = json.loads(body)
    logger.info("stripe_webhook_received", event_id=event["id"], event_type=event.get("type"))

    outcome = await reconciler.handle_event(event)
    return {"status": "ok", "outcome": outcome.value}
