"""Per-recipient delivery outcome model."""
from __future__ import annotations

import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from alo.db.base import Base
from alo.utils.clock import utcnow


class DeliveryStatus(str, enum.Enum):
    """Delivery state of one campaign recipient."""

    PENDING = "pending"
    SENT = "sent"
    FAILED_TRANSIENT = "failed_transient"
    FAILED_PERMANENT = "failed_permanent"


TERMINAL_DELIVERY_STATUSES = (DeliveryStatus.SENT.value, DeliveryStatus.FAILED_PERMANENT.value)


class DeliveryOutcome(Base):
    """Attempt history and result for a (campaign, subscriber) pair."""

    __tablename__ = "delivery_outcomes"
    __table_args__ = (
        UniqueConstraint("campaign_id", "subscriber_id", name="uq_delivery_outcomes_recipient"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(
        Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    subscriber_id = Column(
        Integer, ForeignKey("subscribers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True))
    next_attempt_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    endpoint_gone = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DELIVERY_STATUSES
