"""Error taxonomy for the entitlement and billing-reconciliation engine.

NotFoundError is fatal for the caller. TransientError means an I/O dependency
(database, Stripe) failed and gated actions must be denied. ConflictError is a
lost conditional write; it never leaves the service layer.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError


class PantryBillingError(Exception):
    """Base exception for the billing engine."""

    pass


class NotFoundError(PantryBillingError):
    """Raised when a user or subscription does not exist."""

    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} '{key}' not found")


class TransientError(PantryBillingError):
    """Raised when storage or the payment provider is unavailable."""

    pass


class ConflictError(PantryBillingError):
    """Raised when a conditional write lost its race."""

    pass


@dataclass(frozen=True)
class UpgradeInfo:
    """What the client needs to render an upgrade prompt."""

    capability: str
    tier: str | None = None
    limit: int | str | None = None
    remaining: int | str | None = None

    def to_detail(self) -> dict:
        detail: dict = {"capability": self.capability}
        if self.tier is not None:
            detail["tier"] = self.tier
        if self.limit is not None:
            detail["limit"] = self.limit
        if self.remaining is not None:
            detail["remaining"] = self.remaining
        return detail


class UpgradeRequiredError(PantryBillingError):
    """Raised by request-path guards when the user's tier does not allow an action."""

    def __init__(self, info: UpgradeInfo):
        self.info = info
        super().__init__(f"Upgrade required for '{info.capability}'")


@contextmanager
def storage_errors() -> Iterator[None]:
    """Translate database driver failures into TransientError."""
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        raise TransientError(f"storage unavailable: {type(exc).__name__}") from exc
