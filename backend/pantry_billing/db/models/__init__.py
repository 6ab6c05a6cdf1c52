"""Re-export all models so Base.metadata sees them."""

from pantry_billing.db.models.cookware_item import CookwareItem
from pantry_billing.db.models.pantry_item import PantryItem
from pantry_billing.db.models.stripe_event import StripeWebhookEvent
from pantry_billing.db.models.subscription import Subscription
from pantry_billing.db.models.user import User

__all__ = [
    "CookwareItem",
    "PantryItem",
    "StripeWebhookEvent",
    "Subscription",
    "User",
]
