"""Audience segmentation: dimension registry and filter handling."""

from alo.core.segments.catalog import (
    SegmentCatalog,
    SegmentDimension,
    default_catalog,
)
from alo.core.segments.filters import SegmentFilter, normalize_filters

__all__ = [
    "SegmentCatalog",
    "SegmentDimension",
    "SegmentFilter",
    "default_catalog",
    "normalize_filters",
]
