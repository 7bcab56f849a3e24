"""Celery tasks package."""

from alo.tasks import campaigns

__all__ = ["campaigns"]
