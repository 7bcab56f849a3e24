"""Pydantic schemas for campaign endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from alo.db.models.campaign import BODY_MAX_LENGTH, TITLE_MAX_LENGTH
from alo.schemas.segment import SegmentFilterIn
from alo.utils.clock import as_utc

CampaignAction = Literal["draft", "publish"]


class CampaignBase(BaseModel):
    """Editable campaign fields."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=255)
    title: str = Field(
        min_length=1,
        max_length=TITLE_MAX_LENGTH,
        validation_alias=AliasChoices("title", "push_title"),
    )
    body: str = Field(
        min_length=1,
        max_length=BODY_MAX_LENGTH,
        validation_alias=AliasChoices("body", "push_body"),
    )
    url: Optional[str] = Field(default=None, validation_alias=AliasChoices("url", "push_url"))
    image: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("image", "push_image")
    )
    icon: Optional[str] = Field(default=None, validation_alias=AliasChoices("icon", "push_icon"))
    badge: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("badge", "push_badge")
    )
    require_interaction: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "require_interaction", "requireInteraction", "push_requireInteraction"
        ),
    )
    renotify: bool = Field(default=False, validation_alias=AliasChoices("renotify", "push_renotify"))
    silent: bool = Field(default=False, validation_alias=AliasChoices("silent", "push_silent"))
    send_at: Optional[datetime] = None
    segments: list[SegmentFilterIn] = Field(default_factory=list)

    @field_validator("name", "title", "body", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @field_validator("url", "image", "icon", "badge", mode="before")
    @classmethod
    def _https_only(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            if not value.lower().startswith("https://"):
                raise ValueError("must be an https:// URL")
        return value

    @field_validator("action", mode="before", check_fields=False)
    @classmethod
    def _legacy_action(cls, value: object) -> object:
        # The legacy campaign form labels its publish button "save".
        if isinstance(value, str) and value.strip().lower() == "save":
            return "publish"
        return value

    @field_validator("send_at", mode="after")
    @classmethod
    def _normalize_send_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class CampaignCreate(CampaignBase):
    """Create a campaign; ``publish`` schedules or queues it right away."""

    action: CampaignAction = "draft"


class CampaignUpdate(CampaignBase):
    """Replace the editable fields of a draft or cancelled campaign."""

    action: CampaignAction = "draft"


class CampaignSegmentRead(BaseModel):
    """A stored audience filter."""

    type: str
    values: list[str]


class CampaignRead(BaseModel):
    """Campaign representation returned by the API."""

    id: int
    name: str
    title: str
    body: str
    url: Optional[str] = None
    image: Optional[str] = None
    icon: Optional[str] = None
    badge: Optional[str] = None
    require_interaction: bool
    renotify: bool
    silent: bool
    status: str
    send_at: Optional[datetime] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    error_message: Optional[str] = None
    audience_count: int
    sent_count: int
    failed_count: int
    segments: list[CampaignSegmentRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class DeliveryReportRead(BaseModel):
    """Per-status tallies of a campaign's delivery outcomes."""

    campaign_id: int
    status: str
    audience_count: int
    sent_count: int
    failed_count: int
    outcomes: dict[str, int]


__all__ = [
    "CampaignAction",
    "CampaignBase",
    "CampaignCreate",
    "CampaignRead",
    "CampaignSegmentRead",
    "CampaignUpdate",
    "DeliveryReportRead",
]
