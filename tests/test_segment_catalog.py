"""Tests for the segment catalog and filter normalization."""
from __future__ import annotations

import pytest

from alo.core.segments import SegmentCatalog, SegmentFilter, default_catalog, normalize_filters
from alo.utils.exceptions import InvalidSegmentFilters, UnknownDimension


def test_catalog_lists_dimensions_in_registration_order() -> None:
    ids = [dimension.id for dimension in default_catalog.list_dimensions()]

    assert ids == ["browser", "os", "device", "engagement", "country", "region", "city", "language"]
    assert "country" in default_catalog
    assert "favourite_colour" not in default_catalog


def test_fixed_dimension_values_come_from_code(db_session) -> None:
    assert default_catalog.list_values(db_session, "device") == ["desktop", "mobile", "tablet"]
    assert default_catalog.list_values(db_session, "engagement") == ["active", "inactive", "dormant"]


def test_derived_values_only_include_active_subscribers(db_session, make_subscriber) -> None:
    make_subscriber(country="US")
    make_subscriber(country="CA")
    make_subscriber(country="US")
    make_subscriber(country="FR", active=False)
    make_subscriber(country=None)
    make_subscriber(country="")

    assert default_catalog.list_values(db_session, "country") == ["CA", "US"]


def test_derived_values_are_cached_until_invalidated(db_session, make_subscriber) -> None:
    make_subscriber(language="en")
    assert default_catalog.list_values(db_session, "language") == ["en"]

    make_subscriber(language="pt-BR")
    assert default_catalog.list_values(db_session, "language") == ["en"]

    default_catalog.invalidate_values()
    assert default_catalog.list_values(db_session, "language") == ["en", "pt-BR"]


def test_unknown_dimension_raises(db_session) -> None:
    with pytest.raises(UnknownDimension) as excinfo:
        default_catalog.list_values(db_session, "favourite_colour")

    assert excinfo.value.dimension_id == "favourite_colour"


def test_catalog_rejects_duplicate_registrations() -> None:
    dimension = default_catalog.get("browser")

    with pytest.raises(ValueError):
        SegmentCatalog([dimension, dimension])


def test_segment_filter_cleans_values() -> None:
    item = SegmentFilter.of(" country ", ["US", " CA ", "", None, "US"])

    assert item.type == "country"
    assert item.values == frozenset({"US", "CA"})
    assert not item.is_empty
    assert SegmentFilter.of("country", []).is_empty


def test_duplicate_dimensions_are_rejected_by_default() -> None:
    filters = [SegmentFilter.of("country", ["US"]), SegmentFilter.of("country", ["CA"])]

    with pytest.raises(InvalidSegmentFilters) as excinfo:
        normalize_filters(filters)

    assert excinfo.value.details == {"duplicates": ["country"]}


def test_duplicate_dimensions_can_be_merged() -> None:
    filters = [
        SegmentFilter.of("os", ["iOS"]),
        SegmentFilter.of("country", ["US"]),
        SegmentFilter.of("country", ["CA"]),
    ]

    merged = normalize_filters(filters, "merge")

    assert [item.type for item in merged] == ["os", "country"]
    assert merged[1].values == frozenset({"US", "CA"})
