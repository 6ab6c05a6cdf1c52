"""FastAPI dependencies resolving the services built in the application lifespan."""

from fastapi import Request

from pantry_billing.services.entitlement_service import EntitlementEngine
from pantry_billing.services.stripe_gateway import StripeGateway
from pantry_billing.services.subscription_store import SubscriptionStore
from pantry_billing.services.trial_service import TrialService
from pantry_billing.services.webhook_reconciler import WebhookReconciler


def get_entitlements(request: Request) -> EntitlementEngine:
    return request.app.state.entitlements


def get_store(request: Request) -> SubscriptionStore:
    return request.app.state.subscriptions


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.stripe


def get_trials(request: Request) -> TrialService:
    return request.app.state.trials


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler
