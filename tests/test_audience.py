"""Tests for audience resolution."""
from __future__ import annotations

from datetime import timedelta

import pytest

from alo.core.segments import SegmentFilter
from alo.services.audience import AudienceResolver
from alo.utils.exceptions import InvalidSegmentFilters, UnknownDimension
from tests.factories import NOW


@pytest.fixture()
def resolver(db_session, clock) -> AudienceResolver:
    return AudienceResolver(db_session, clock=clock)


@pytest.fixture()
def north_american_audience(make_subscriber):
    recent = NOW - timedelta(days=2)
    stale = NOW - timedelta(days=12)
    subscribers = [
        make_subscriber(country="US", last_seen_at=recent),
        make_subscriber(country="US", last_seen_at=recent),
        make_subscriber(country="US", last_seen_at=recent),
        make_subscriber(country="CA", last_seen_at=recent),
        make_subscriber(country="CA", last_seen_at=recent),
        make_subscriber(country="US", last_seen_at=stale),
    ]
    return subscribers


def test_filters_and_across_dimensions_or_within(resolver, north_american_audience) -> None:
    filters = [
        SegmentFilter.of("country", ["US", "CA"]),
        SegmentFilter.of("engagement", ["active"]),
    ]

    assert resolver.count(filters) == 5
    audience = resolver.resolve(filters)
    expected = sorted(subscriber.id for subscriber in north_american_audience[:5])
    assert list(audience.members()) == expected


def test_filter_order_does_not_change_audience(resolver, north_american_audience) -> None:
    country = SegmentFilter.of("country", ["US"])
    engagement = SegmentFilter.of("engagement", ["inactive"])

    first = list(resolver.resolve([country, engagement]).members())
    second = list(resolver.resolve([engagement, country]).members())

    assert first == second == [north_american_audience[5].id]


def test_no_filters_means_every_active_subscriber(resolver, make_subscriber) -> None:
    make_subscriber()
    make_subscriber()
    make_subscriber(active=False)

    assert resolver.count([]) == 2


def test_empty_value_set_matches_nobody(resolver, north_american_audience) -> None:
    audience = resolver.resolve([SegmentFilter.of("country", [])])

    assert audience.matches_nothing
    assert audience.count() == 0
    assert list(audience.batches(2)) == []


def test_inactive_subscribers_are_never_resolved(resolver, make_subscriber) -> None:
    kept = make_subscriber(country="DE")
    make_subscriber(country="DE", active=False)

    audience = resolver.resolve([SegmentFilter.of("country", ["DE"])])

    assert list(audience.members()) == [kept.id]


def test_engagement_buckets(resolver, make_subscriber) -> None:
    active = make_subscriber(last_seen_at=NOW - timedelta(days=1))
    inactive = make_subscriber(last_seen_at=NOW - timedelta(days=10))
    old = make_subscriber(last_seen_at=NOW - timedelta(days=90))
    never = make_subscriber(last_seen_at=None)

    def members(*buckets: str) -> list[int]:
        return list(resolver.resolve([SegmentFilter.of("engagement", buckets)]).members())

    assert members("active") == [active.id]
    assert members("inactive") == [inactive.id]
    assert members("dormant") == [old.id, never.id]
    assert members("active", "dormant") == [active.id, old.id, never.id]
    assert members("sleepy") == []


def test_batches_walk_ids_in_ascending_pages(resolver, make_subscriber) -> None:
    ids = [make_subscriber().id for _ in range(7)]

    audience = resolver.resolve([])

    assert list(audience.batches(3)) == [ids[0:3], ids[3:6], ids[6:7]]
    assert list(audience.batches(3, after_id=ids[4])) == [ids[5:7]]


def test_partitions_are_disjoint_and_complete(resolver, make_subscriber) -> None:
    ids = [make_subscriber().id for _ in range(10)]
    audience = resolver.resolve([])

    slices = [list(audience.members(4, partition=(index, 3))) for index in range(3)]

    assert sorted(item for chunk in slices for item in chunk) == ids
    assert not set(slices[0]) & set(slices[1])
    with pytest.raises(ValueError):
        list(audience.batches(4, partition=(3, 3)))


def test_unknown_dimension_is_rejected(resolver) -> None:
    with pytest.raises(UnknownDimension):
        resolver.resolve([SegmentFilter.of("favourite_colour", ["blue"])])


def test_duplicate_dimensions_follow_policy(db_session, clock, north_american_audience) -> None:
    filters = [SegmentFilter.of("country", ["US"]), SegmentFilter.of("country", ["CA"])]

    with pytest.raises(InvalidSegmentFilters):
        AudienceResolver(db_session, clock=clock).resolve(filters)

    merging = AudienceResolver(db_session, clock=clock, duplicate_policy="merge")
    assert merging.count(filters) == 6


def test_preview_count_is_cached_briefly(resolver, make_subscriber) -> None:
    make_subscriber(country="NL")
    filters = [SegmentFilter.of("country", ["NL"])]
    assert resolver.count(filters) == 1

    make_subscriber(country="NL")

    assert resolver.count(filters) == 1
    assert resolver.count(filters, use_cache=False) == 2
