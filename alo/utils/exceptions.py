"""Custom exception classes and error handling utilities."""
from typing import Any, Dict, Optional
from fastapi import HTTPException, status
from loguru import logger


class AloException(Exception):
    """Base exception for the application."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class UnknownDimension(AloException):
    """A segment filter or lookup referenced an unregistered dimension."""

    def __init__(self, dimension_id: str):
        self.dimension_id = dimension_id
        super().__init__(
            f"Unknown segment dimension: {dimension_id}", {"dimension": dimension_id}
        )


class InvalidSegmentFilters(AloException):
    """The filter set breaks the one-filter-per-dimension rule."""
    pass


class CampaignNotFound(AloException):
    """Campaign lookup failed."""

    def __init__(self, campaign_id: int):
        self.campaign_id = campaign_id
        super().__init__(f"Campaign {campaign_id} not found", {"campaign_id": campaign_id})


class CampaignStateError(AloException):
    """The requested action is not legal in the campaign's current status."""
    pass


class SchedulerRaceLost(AloException):
    """Another worker changed the campaign status first."""
    pass


class TransientDeliveryError(AloException):
    """Retryable push failure (rate limiting, timeouts, 5xx)."""
    pass


class PermanentDeliveryFailure(AloException):
    """Non-retryable push failure for a single recipient."""

    def __init__(
        self,
        message: str,
        *,
        endpoint_gone: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.endpoint_gone = endpoint_gone
        super().__init__(message, details)


class EngineExecutionFailure(AloException):
    """The campaign cannot be executed at all (invalid payload or configuration)."""
    pass


def handle_unknown_dimension(error: UnknownDimension) -> HTTPException:
    """Handle lookups of unregistered segment dimensions."""
    logger.warning(f"Unknown dimension: {error.dimension_id}")
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"message": error.message, "details": error.details},
    )


def handle_invalid_filters(error: InvalidSegmentFilters) -> HTTPException:
    """Handle filter sets rejected by the duplicate policy."""
    logger.warning(f"Invalid segment filters: {error.message}")
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={
            "message": error.message,
            "details": error.details
        }
    )


def handle_campaign_not_found(error: CampaignNotFound) -> HTTPException:
    """Handle missing campaigns."""
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=error.message
    )


def handle_campaign_state_error(error: CampaignStateError) -> HTTPException:
    """Handle illegal lifecycle actions and lost transitions."""
    logger.warning(f"Campaign state error: {error.message}")
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "message": error.message,
            "details": error.details
        }
    )
