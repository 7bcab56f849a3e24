"""Database models package."""
from alo.db.models.campaign import Campaign, CampaignSegment, CampaignStatus
from alo.db.models.delivery import DeliveryOutcome, DeliveryStatus
from alo.db.models.subscriber import Subscriber

__all__ = [
    "Campaign",
    "CampaignSegment",
    "CampaignStatus",
    "DeliveryOutcome",
    "DeliveryStatus",
    "Subscriber",
]
