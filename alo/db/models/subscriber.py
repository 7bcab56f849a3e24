"""Push subscriber model."""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from alo.db.base import Base
from alo.utils.clock import utcnow


class Subscriber(Base):
    """A Web Push subscription plus the attribute snapshot used for segmentation.

    Attributes are written by the ingestion pipeline; the campaign core only
    reads them and flips ``active`` when the push service reports the
    subscription gone.
    """

    __tablename__ = "subscribers"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Push credentials
    endpoint = Column(Text, nullable=False, unique=True)
    p256dh = Column(String(255), nullable=False)
    auth = Column(String(255), nullable=False)

    # Attribute snapshot
    browser = Column(String(50), index=True)
    os = Column(String(50), index=True)
    device = Column(String(20), index=True)
    language = Column(String(20), index=True)
    country = Column(String(2), index=True)
    region = Column(String(100))
    city = Column(String(100))
    subscribed_at = Column(DateTime(timezone=True), default=utcnow)
    last_seen_at = Column(DateTime(timezone=True), index=True)

    active = Column(Boolean, nullable=False, default=True, index=True)
    deactivated_at = Column(DateTime(timezone=True))
