"""Tests for the billing API: checkout, portal, and the signed webhook endpoint."""

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe

from pantry_billing.core.exceptions import TransientError
from pantry_billing.domain.subscription_states import PlanType, SubscriptionStatus
from pantry_billing.domain.tiers import Tier
from pantry_billing.services.stripe_gateway import PriceInfo

pytestmark = pytest.mark.integration

WEBHOOK_SECRET = "whsec_test_dummy"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_stripe_event(event_id: str, event_type: str, data: dict) -> dict:
    """Build a minimal Stripe-style event dict."""
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": data}}


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Produce a Stripe-Signature header the SDK will accept."""
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


async def _post_event(client, event: dict):
    payload = json.dumps(event).encode()
    return await client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"stripe-signature": _sign(payload), "Content-Type": "application/json"},
    )


def _active_subscription() -> dict:
    return {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "metadata": {"user_id": "user_1"},
        "items": {"data": [{"price": {"id": "price_pro_mo"}, "current_period_start": 1773576000, "current_period_end": 1776254400}]},
    }


@pytest.fixture
def stub_stripe(api_app):
    gateway = api_app.state.stripe
    gateway.resolve_price = AsyncMock(return_value=PriceInfo(Tier.PRO, PlanType.MONTHLY))
    gateway.retrieve_subscription = AsyncMock(return_value=_active_subscription())
    gateway.create_customer = AsyncMock(return_value="cus_new")
    gateway.create_checkout_session = AsyncMock(return_value="https://checkout.stripe.test/c/1")
    gateway.create_portal_session = AsyncMock(return_value="https://billing.stripe.test/p/1")
    return gateway


# ---------------------------------------------------------------------------
# Webhook verification
# ---------------------------------------------------------------------------


class TestWebhookVerification:
    async def test_webhook_returns_503_when_secret_missing(self, api_client):
        mock_settings = MagicMock()
        mock_settings.stripe_webhook_secret = ""

        with patch("pantry_billing.api.routes.billing.get_settings", return_value=mock_settings):
            response = await api_client.post(
                "/api/webhooks/stripe",
                content=b"{}",
                headers={"stripe-signature": "t=0,v1=bad", "Content-Type": "application/json"},
            )

        assert response.status_code == 503
        assert "not configured" in response.json()["detail"].lower()

    async def test_webhook_rejects_missing_signature(self, api_client):
        response = await api_client.post(
            "/api/webhooks/stripe",
            content=b'{"id": "evt_001", "type": "checkout.session.completed"}',
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert "stripe-signature" in response.json()["detail"].lower()

    async def test_webhook_rejects_invalid_signature(self, api_client):
        payload = json.dumps(_make_stripe_event("evt_bad", "invoice.paid", {})).encode()

        response = await api_client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": _sign(payload, "whsec_wrong"), "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"

    async def test_signature_error_from_sdk_is_400(self, api_client):
        with patch(
            "stripe.Webhook.construct_event",
            side_effect=stripe.SignatureVerificationError("Invalid signature", "t=0,v1=bad"),
        ):
            response = await api_client.post(
                "/api/webhooks/stripe",
                content=b"{}",
                headers={"stripe-signature": "t=0,v1=bad", "Content-Type": "application/json"},
            )

        assert response.status_code == 400


# ---------------------------------------------------------------------------
# Webhook reconciliation through the endpoint
# ---------------------------------------------------------------------------


class TestWebhookReconciliation:
    async def test_signed_event_updates_subscription(self, make_user, api_app, api_client, stub_stripe, load_user):
        await make_user()

        response = await _post_event(
            api_client, _make_stripe_event("evt_1", "customer.subscription.updated", _active_subscription())
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "outcome": "processed"}
        user = await load_user()
        assert (user.tier, user.subscription_status) == ("PRO", "active")

    async def test_duplicate_delivery_is_acknowledged_once(self, make_user, api_client, stub_stripe):
        await make_user()
        event = _make_stripe_event("evt_dup", "customer.subscription.updated", _active_subscription())

        first = await _post_event(api_client, event)
        second = await _post_event(api_client, event)

        assert first.json()["outcome"] == "processed"
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        assert stub_stripe.resolve_price.await_count == 1

    async def test_handler_failure_is_acknowledged_and_stored(self, make_user, api_client, stub_stripe):
        await make_user()
        stub_stripe.retrieve_subscription.side_effect = TransientError("Stripe subscription_retrieve timed out")
        invoice = {"customer": "cus_1", "subscription": "sub_1", "metadata": {"user_id": "user_1"}}

        response = await _post_event(api_client, _make_stripe_event("evt_slow", "invoice.paid", invoice))

        assert response.status_code == 200
        assert response.json()["outcome"] == "failed"

    async def test_failure_mark_outage_still_acknowledged(self, make_user, api_app, api_client, stub_stripe, monkeypatch):
        await make_user()
        stub_stripe.retrieve_subscription.side_effect = TransientError("Stripe subscription_retrieve timed out")
        monkeypatch.setattr(
            api_app.state.reconciler, "_mark", AsyncMock(side_effect=TransientError("storage unavailable"))
        )
        invoice = {"customer": "cus_1", "subscription": "sub_1", "metadata": {"user_id": "user_1"}}

        response = await _post_event(api_client, _make_stripe_event("evt_mark", "invoice.paid", invoice))

        assert response.status_code == 200
        assert response.json()["outcome"] == "failed"

    async def test_ledger_outage_returns_503_for_redelivery(self, api_app, api_client, monkeypatch):
        monkeypatch.setattr(
            api_app.state.reconciler, "_claim_event", AsyncMock(side_effect=TransientError("storage unavailable"))
        )

        response = await _post_event(api_client, _make_stripe_event("evt_x", "invoice.paid", {}))

        assert response.status_code == 503

    async def test_unhandled_event_type_is_ignored(self, api_client):
        response = await _post_event(api_client, _make_stripe_event("evt_c", "customer.created", {"id": "cus_1"}))

        assert response.json()["outcome"] == "ignored"


# ---------------------------------------------------------------------------
# Checkout and portal
# ---------------------------------------------------------------------------


class TestCheckoutAndPortal:
    async def test_checkout_creates_customer_for_new_user(self, make_user, api_client, stub_stripe):
        await make_user()

        response = await api_client.post("/api/billing/checkout", json={"tier": "PRO", "interval": "annual"})

        assert response.status_code == 200
        assert response.json() == {"checkout_url": "https://checkout.stripe.test/c/1"}
        stub_stripe.create_customer.assert_awaited_once_with("user_1", "user_1@example.com")
        stub_stripe.create_checkout_session.assert_awaited_once_with("cus_new", "price_pro_yr", "user_1")

    async def test_checkout_reuses_existing_customer(self, make_user, api_app, api_client, stub_stripe):
        await make_user()
        await api_app.state.subscriptions.apply(
            "user_1", SubscriptionStatus.ACTIVE, {"tier": "BASIC", "stripe_customer_id": "cus_existing"}
        )

        await api_client.post("/api/billing/checkout", json={})

        stub_stripe.create_customer.assert_not_awaited()
        stub_stripe.create_checkout_session.assert_awaited_once_with("cus_existing", "price_pro_mo", "user_1")

    async def test_checkout_does_not_write_subscription_row(self, make_user, api_app, api_client, stub_stripe):
        await make_user()

        await api_client.post("/api/billing/checkout", json={})

        assert await api_app.state.subscriptions.get_by_user("user_1") is None

    async def test_checkout_rejects_unconfigured_price(self, make_user, api_app, api_client, stub_stripe):
        await make_user()
        api_app.state.stripe.price_for = MagicMock(return_value=None)

        response = await api_client.post("/api/billing/checkout", json={"tier": "BASIC"})

        assert response.status_code == 400

    async def test_checkout_provider_timeout_is_503(self, make_user, api_client, stub_stripe):
        await make_user()
        stub_stripe.create_customer.side_effect = TransientError("Stripe customer_create timed out")

        response = await api_client.post("/api/billing/checkout", json={})

        assert response.status_code == 503

    async def test_portal_requires_billing_account(self, make_user, api_client, stub_stripe):
        await make_user()

        response = await api_client.post("/api/billing/portal")

        assert response.status_code == 400

    async def test_portal_returns_url(self, make_user, api_app, api_client, stub_stripe):
        await make_user()
        await api_app.state.subscriptions.apply(
            "user_1", SubscriptionStatus.ACTIVE, {"stripe_customer_id": "cus_existing"}
        )

        response = await api_client.post("/api/billing/portal")

        assert response.json() == {"portal_url": "https://billing.stripe.test/p/1"}
        stub_stripe.create_portal_session.assert_awaited_once_with("cus_existing")
