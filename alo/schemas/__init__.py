"""Pydantic schemas package."""

from alo.schemas.campaign import (
    CampaignCreate,
    CampaignRead,
    CampaignSegmentRead,
    CampaignUpdate,
    DeliveryReportRead,
)
from alo.schemas.segment import (
    SegmentCountRequest,
    SegmentCountResponse,
    SegmentDimensionRead,
    SegmentFilterIn,
    SegmentValuesRead,
)

__all__ = [
    "CampaignCreate",
    "CampaignRead",
    "CampaignSegmentRead",
    "CampaignUpdate",
    "DeliveryReportRead",
    "SegmentCountRequest",
    "SegmentCountResponse",
    "SegmentDimensionRead",
    "SegmentFilterIn",
    "SegmentValuesRead",
]
