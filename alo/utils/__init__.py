"""Utility helpers package."""

from alo.utils.cache import CacheBackend, build_cache_key, cache_backend
from alo.utils.clock import as_utc, utcnow

__all__ = ["CacheBackend", "cache_backend", "build_cache_key", "as_utc", "utcnow"]
