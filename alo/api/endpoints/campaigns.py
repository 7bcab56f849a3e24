"""Campaign authoring endpoints."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from alo.api import deps
from alo.db.models.campaign import Campaign, CampaignStatus
from alo.schemas.campaign import (
    CampaignCreate,
    CampaignRead,
    CampaignSegmentRead,
    CampaignUpdate,
    DeliveryReportRead,
)
from alo.services.campaigns import CampaignService
from alo.utils.exceptions import (
    CampaignNotFound,
    CampaignStateError,
    InvalidSegmentFilters,
    UnknownDimension,
    handle_campaign_not_found,
    handle_campaign_state_error,
    handle_invalid_filters,
    handle_unknown_dimension,
)

router = APIRouter(
    prefix="/campaigns", tags=["campaigns"], dependencies=[Depends(deps.require_admin)]
)


def _to_read(campaign: Campaign) -> CampaignRead:
    return CampaignRead(
        id=campaign.id,
        name=campaign.name,
        title=campaign.title,
        body=campaign.body,
        url=campaign.url,
        image=campaign.image,
        icon=campaign.icon,
        badge=campaign.badge,
        require_interaction=campaign.require_interaction,
        renotify=campaign.renotify,
        silent=campaign.silent,
        status=campaign.status,
        send_at=campaign.send_at,
        queued_at=campaign.queued_at,
        started_at=campaign.started_at,
        completed_at=campaign.completed_at,
        cancelled_at=campaign.cancelled_at,
        error_message=campaign.error_message,
        audience_count=campaign.audience_count,
        sent_count=campaign.sent_count,
        failed_count=campaign.failed_count,
        segments=[
            CampaignSegmentRead(type=item.segment_type, values=list(item.segment_values))
            for item in campaign.segments
        ],
        created_at=campaign.created_at,
        updated_at=campaign.updated_at,
    )


@router.get("", response_model=list[CampaignRead])
def list_campaigns(
    *,
    status_filter: Optional[CampaignStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: CampaignService = Depends(deps.get_campaign_service),
) -> list[CampaignRead]:
    """Return campaigns, newest first."""

    campaigns = service.list_campaigns(status=status_filter, limit=limit, offset=offset)
    return [_to_read(campaign) for campaign in campaigns]


@router.post("", response_model=CampaignRead, status_code=status.HTTP_201_CREATED)
def create_campaign(
    payload: CampaignCreate,
    *,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> CampaignRead:
    """Save a new campaign as a draft or publish it immediately."""

    try:
        campaign = service.create(payload)
    except UnknownDimension as exc:
        raise handle_unknown_dimension(exc) from exc
    except InvalidSegmentFilters as exc:
        raise handle_invalid_filters(exc) from exc
    except CampaignStateError as exc:
        raise handle_campaign_state_error(exc) from exc
    return _to_read(campaign)


@router.get("/{campaign_id}", response_model=CampaignRead)
def get_campaign(
    campaign_id: int,
    *,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> CampaignRead:
    try:
        return _to_read(service.get(campaign_id))
    except CampaignNotFound as exc:
        raise handle_campaign_not_found(exc) from exc


@router.put("/{campaign_id}", response_model=CampaignRead)
def update_campaign(
    campaign_id: int,
    payload: CampaignUpdate,
    *,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> CampaignRead:
    """Edit a draft or cancelled campaign."""

    try:
        campaign = service.update(campaign_id, payload)
    except CampaignNotFound as exc:
        raise handle_campaign_not_found(exc) from exc
    except UnknownDimension as exc:
        raise handle_unknown_dimension(exc) from exc
    except InvalidSegmentFilters as exc:
        raise handle_invalid_filters(exc) from exc
    except CampaignStateError as exc:
        raise handle_campaign_state_error(exc) from exc
    return _to_read(campaign)


@router.post("/{campaign_id}/publish", response_model=CampaignRead)
def publish_campaign(
    campaign_id: int,
    *,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> CampaignRead:
    """Queue the campaign now or schedule it for its send time."""

    try:
        campaign = service.publish(campaign_id)
    except CampaignNotFound as exc:
        raise handle_campaign_not_found(exc) from exc
    except UnknownDimension as exc:
        raise handle_unknown_dimension(exc) from exc
    except CampaignStateError as exc:
        raise handle_campaign_state_error(exc) from exc
    return _to_read(campaign)


@router.post("/{campaign_id}/cancel", response_model=CampaignRead)
def cancel_campaign(
    campaign_id: int,
    *,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> CampaignRead:
    """Cancel a draft or scheduled campaign."""

    try:
        campaign = service.cancel(campaign_id)
    except CampaignNotFound as exc:
        raise handle_campaign_not_found(exc) from exc
    except CampaignStateError as exc:
        raise handle_campaign_state_error(exc) from exc
    return _to_read(campaign)


@router.get("/{campaign_id}/report", response_model=DeliveryReportRead)
def campaign_report(
    campaign_id: int,
    *,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> DeliveryReportRead:
    """Return delivery outcome tallies for a campaign."""

    try:
        report = service.delivery_report(campaign_id)
    except CampaignNotFound as exc:
        raise handle_campaign_not_found(exc) from exc
    return DeliveryReportRead(**report)
