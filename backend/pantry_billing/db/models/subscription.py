"""Subscription model: local mirror of the provider subscription, one row per user."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String

from pantry_billing.db.base import Base, UTCDateTime, utcnow


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), ForeignKey("users.id"), unique=True, nullable=False, index=True)

    status = Column(String(20), nullable=False)  # trialing, active, past_due, canceled, expired
    plan_type = Column(String(20), nullable=False, default="monthly")  # monthly | annual
    tier = Column(String(20), nullable=False)  # tier this row entitles while status is entitled

    current_period_start = Column(UTCDateTime, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True)
    trial_start = Column(UTCDateTime, nullable=True)
    trial_end = Column(UTCDateTime, nullable=True, index=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(UTCDateTime, nullable=True)

    # Reconciliation keys
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_price_id = Column(String(255), nullable=True)
    last_event_id = Column(String(255), nullable=True)  # diagnostic only, not used for ordering

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
