"""CookwareItem model: counted against the cookware quota."""

from sqlalchemy import Column, ForeignKey, Integer, String

from pantry_billing.db.base import Base, UTCDateTime, utcnow


class CookwareItem(Base):
    __tablename__ = "cookware_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
