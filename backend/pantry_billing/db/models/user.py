"""User model: identity plus the denormalized authorization mirror."""

from sqlalchemy import Column, Integer, String

from pantry_billing.db.base import Base, UTCDateTime, utcnow
from pantry_billing.domain.tiers import LOWEST_TIER


class User(Base):
    __tablename__ = "users"

    id = Column(String(255), primary_key=True)  # Clerk subject
    email = Column(String(255), nullable=True)

    # Authorization mirror (rewritten from the subscription row, never authoritative)
    tier = Column(String(20), nullable=False, default=LOWEST_TIER.value)
    subscription_status = Column(String(20), nullable=True)
    trial_ends_at = Column(UTCDateTime, nullable=True)

    # Monthly AI recipe counter, reset lazily on read
    ai_recipes_generated_this_month = Column(Integer, nullable=False, default=0)
    ai_recipes_reset_date = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
