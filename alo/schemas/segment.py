"""Pydantic schemas for segment endpoints."""
from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from alo.core.segments import SegmentFilter


class SegmentDimensionRead(BaseModel):
    """A filterable audience dimension."""

    id: str
    name: str
    original_name: str
    description: str
    kind: Literal["fixed", "derived"]


class SegmentValuesRead(BaseModel):
    """Legal values of one dimension."""

    id: str
    values: list[str]


class SegmentFilterIn(BaseModel):
    """One audience filter as posted by the campaign form.

    The form historically posts ``segmentId``/``segmentName``; ``type`` is the
    canonical name.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(
        min_length=1,
        max_length=50,
        validation_alias=AliasChoices("type", "segmentId", "segment_id"),
    )
    values: list[str] = Field(default_factory=list)
    segment_name: str | None = Field(
        default=None, validation_alias=AliasChoices("segmentName", "segment_name")
    )

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: object) -> object:
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("values", mode="before")
    @classmethod
    def _coerce_values(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, (str, int)):
            return [str(value)]
        if isinstance(value, list):
            return [str(item) for item in value if item is not None]
        return value

    def to_filter(self) -> SegmentFilter:
        return SegmentFilter.of(self.type, self.values)


class SegmentCountRequest(BaseModel):
    """Audience preview request."""

    filters: list[SegmentFilterIn] = Field(default_factory=list)


class SegmentCountResponse(BaseModel):
    """Number of active subscribers matching a filter set."""

    count: int


__all__ = [
    "SegmentCountRequest",
    "SegmentCountResponse",
    "SegmentDimensionRead",
    "SegmentFilterIn",
    "SegmentValuesRead",
]
