"""StripeWebhookEvent model for idempotency tracking and reprocessing."""

from sqlalchemy import JSON, Column, Integer, String, Text

from pantry_billing.db.base import Base, UTCDateTime, utcnow


class StripeWebhookEvent(Base):
    """Ledger of Stripe webhook event IDs.

    A row is claimed before handling. Events whose handler failed keep their
    payload so the expiration sweep can replay them.
    """

    __tablename__ = "stripe_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default="processing", index=True)  # processing | processed | failed
    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)

    received_at = Column(UTCDateTime, nullable=False, default=utcnow)
    processed_at = Column(UTCDateTime, nullable=True)
