"""Top-level API router."""
from fastapi import APIRouter

from alo.api.endpoints import campaigns, segments


api_router = APIRouter()
api_router.include_router(segments.router)
api_router.include_router(campaigns.router)
