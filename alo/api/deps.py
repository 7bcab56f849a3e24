"""Shared API dependencies."""
from __future__ import annotations

import secrets
from typing import Generator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from alo.config import settings
from alo.core.segments import SegmentCatalog, default_catalog
from alo.db.session import SessionLocal
from alo.services.audience import AudienceResolver
from alo.services.campaigns import CampaignService

bearer_scheme = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for request lifetime."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """Check the admin bearer token when one is configured."""

    expected = settings.ADMIN_API_TOKEN
    if not expected:
        return
    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_catalog() -> SegmentCatalog:
    return default_catalog


def get_audience_resolver(
    db: Session = Depends(get_db),
    catalog: SegmentCatalog = Depends(get_catalog),
) -> AudienceResolver:
    return AudienceResolver(db, catalog=catalog)


def get_campaign_service(
    db: Session = Depends(get_db),
    catalog: SegmentCatalog = Depends(get_catalog),
) -> CampaignService:
    return CampaignService(db, catalog=catalog)
