"""Segment catalog and audience preview endpoints used by the campaign form."""
from __future__ import annotations

from typing import Union

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from alo.api import deps
from alo.core.segments import SegmentCatalog
from alo.schemas.segment import (
    SegmentCountRequest,
    SegmentCountResponse,
    SegmentDimensionRead,
    SegmentFilterIn,
    SegmentValuesRead,
)
from alo.services.audience import AudienceResolver
from alo.utils.exceptions import (
    InvalidSegmentFilters,
    UnknownDimension,
    handle_invalid_filters,
    handle_unknown_dimension,
)

router = APIRouter(tags=["segments"], dependencies=[Depends(deps.require_admin)])


@router.get("/campaign/segments", response_model=list[SegmentDimensionRead])
def list_segments(
    *,
    catalog: SegmentCatalog = Depends(deps.get_catalog),
) -> list[SegmentDimensionRead]:
    """Return the dimensions a campaign audience can be filtered by."""

    return [
        SegmentDimensionRead(
            id=dimension.id,
            name=dimension.name,
            original_name=dimension.id,
            description=dimension.description,
            kind=dimension.kind,
        )
        for dimension in catalog.list_dimensions()
    ]


@router.get("/segments/values/{dimension_id}", response_model=SegmentValuesRead)
def list_segment_values(
    dimension_id: str,
    *,
    db: Session = Depends(deps.get_db),
    catalog: SegmentCatalog = Depends(deps.get_catalog),
) -> SegmentValuesRead:
    """Return the selectable values of one dimension."""

    try:
        values = catalog.list_values(db, dimension_id)
    except UnknownDimension as exc:
        raise handle_unknown_dimension(exc) from exc
    return SegmentValuesRead(id=dimension_id, values=values)


@router.post("/segments", response_model=SegmentCountResponse)
def count_audience(
    payload: Union[SegmentCountRequest, list[SegmentFilterIn]] = Body(...),
    *,
    resolver: AudienceResolver = Depends(deps.get_audience_resolver),
) -> SegmentCountResponse:
    """Count active subscribers matching a filter set (live preview)."""

    items = payload.filters if isinstance(payload, SegmentCountRequest) else payload
    try:
        count = resolver.count([item.to_filter() for item in items])
    except UnknownDimension as exc:
        raise handle_unknown_dimension(exc) from exc
    except InvalidSegmentFilters as exc:
        raise handle_invalid_filters(exc) from exc
    return SegmentCountResponse(count=count)
