"""Registry of audience dimensions and their legal values."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Literal

from loguru import logger
from sqlalchemy import and_, false, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from alo.config import settings
from alo.core.segments.filters import SegmentFilter
from alo.db.models.subscriber import Subscriber
from alo.utils.cache import cache_backend
from alo.utils.exceptions import UnknownDimension

DimensionKind = Literal["fixed", "derived"]
PredicateBuilder = Callable[[frozenset[str], datetime], ColumnElement]

ENGAGEMENT_BUCKETS = ("active", "inactive", "dormant")


@dataclass(frozen=True)
class SegmentDimension:
    """One filterable subscriber attribute.

    ``fixed`` dimensions enumerate a vocabulary defined in code. ``derived``
    dimensions enumerate the distinct values currently stored for active
    subscribers, so their listings go stale as subscribers churn.
    """

    id: str
    name: str
    description: str
    kind: DimensionKind
    column: Any = None
    fixed_values: tuple[str, ...] = ()
    predicate_builder: PredicateBuilder | None = None

    def predicate(self, values: frozenset[str], now: datetime) -> ColumnElement:
        """SQL condition matching subscribers with any of ``values``."""

        if not values:
            return false()
        if self.predicate_builder is not None:
            return self.predicate_builder(values, now)
        return self.column.in_(sorted(values))


def engagement_predicate(values: frozenset[str], now: datetime) -> ColumnElement:
    """Match recency buckets of ``Subscriber.last_seen_at`` relative to ``now``."""

    active_since = now - timedelta(days=settings.ENGAGEMENT_ACTIVE_DAYS)
    dormant_before = now - timedelta(days=settings.ENGAGEMENT_DORMANT_DAYS)
    seen = Subscriber.last_seen_at
    buckets = {
        "active": seen >= active_since,
        "inactive": and_(seen < active_since, seen >= dormant_before),
        "dormant": or_(seen.is_(None), seen < dormant_before),
    }
    clauses = [buckets[value] for value in sorted(values) if value in buckets]
    if not clauses:
        return false()
    return or_(*clauses)


DEFAULT_DIMENSIONS: tuple[SegmentDimension, ...] = (
    SegmentDimension(
        id="browser",
        name="Browser",
        description="Browser the subscription was created in",
        kind="fixed",
        column=Subscriber.browser,
        fixed_values=("Chrome", "Edge", "Firefox", "Opera", "Safari", "Samsung Internet", "Other"),
    ),
    SegmentDimension(
        id="os",
        name="Operating system",
        description="Operating system of the subscribed device",
        kind="fixed",
        column=Subscriber.os,
        fixed_values=("Android", "ChromeOS", "iOS", "Linux", "macOS", "Windows", "Other"),
    ),
    SegmentDimension(
        id="device",
        name="Device type",
        description="Desktop, mobile or tablet",
        kind="fixed",
        column=Subscriber.device,
        fixed_values=("desktop", "mobile", "tablet"),
    ),
    SegmentDimension(
        id="engagement",
        name="Engagement",
        description="How recently the subscriber visited the site",
        kind="fixed",
        fixed_values=ENGAGEMENT_BUCKETS,
        predicate_builder=engagement_predicate,
    ),
    SegmentDimension(
        id="country",
        name="Country",
        description="Country resolved from the subscriber's IP address",
        kind="derived",
        column=Subscriber.country,
    ),
    SegmentDimension(
        id="region",
        name="Region",
        description="State or region resolved from the subscriber's IP address",
        kind="derived",
        column=Subscriber.region,
    ),
    SegmentDimension(
        id="city",
        name="City",
        description="City resolved from the subscriber's IP address",
        kind="derived",
        column=Subscriber.city,
    ),
    SegmentDimension(
        id="language",
        name="Language",
        description="Browser language of the subscriber",
        kind="derived",
        column=Subscriber.language,
    ),
)


class SegmentCatalog:
    """Ordered registry of :class:`SegmentDimension` definitions."""

    VALUES_NAMESPACE = "segments:values"

    def __init__(self, dimensions: Iterable[SegmentDimension] = DEFAULT_DIMENSIONS) -> None:
        self._dimensions: dict[str, SegmentDimension] = {}
        for dimension in dimensions:
            if dimension.id in self._dimensions:
                raise ValueError(f"Duplicate segment dimension: {dimension.id}")
            self._dimensions[dimension.id] = dimension

    def __contains__(self, dimension_id: object) -> bool:
        return dimension_id in self._dimensions

    def list_dimensions(self) -> list[SegmentDimension]:
        return list(self._dimensions.values())

    def get(self, dimension_id: str) -> SegmentDimension:
        try:
            return self._dimensions[dimension_id]
        except KeyError:
            raise UnknownDimension(dimension_id) from None

    def list_values(self, db: Session, dimension_id: str) -> list[str]:
        """Return the legal values for a dimension.

        Derived enumerations are cached for
        ``SEGMENT_VALUES_CACHE_TTL_SECONDS`` or until :meth:`invalidate_values`.
        """

        dimension = self.get(dimension_id)
        if dimension.kind == "fixed":
            return list(dimension.fixed_values)

        cached = cache_backend.get(self.VALUES_NAMESPACE, dimension.id)
        if cached is not None:
            return cached

        column = dimension.column
        values = list(
            db.scalars(
                select(column)
                .where(Subscriber.active.is_(True))
                .where(column.is_not(None))
                .where(column != "")
                .distinct()
                .order_by(column)
            ).all()
        )
        cache_backend.set(
            self.VALUES_NAMESPACE,
            dimension.id,
            values,
            ttl_seconds=settings.SEGMENT_VALUES_CACHE_TTL_SECONDS,
        )
        return values

    def invalidate_values(self) -> None:
        """Forget cached derived enumerations after subscriber churn."""

        cache_backend.invalidate(self.VALUES_NAMESPACE)
        logger.debug("Derived segment values invalidated")

    def predicate(self, segment_filter: SegmentFilter, now: datetime) -> ColumnElement:
        return self.get(segment_filter.type).predicate(segment_filter.values, now)


default_catalog = SegmentCatalog()


__all__ = [
    "DEFAULT_DIMENSIONS",
    "ENGAGEMENT_BUCKETS",
    "SegmentCatalog",
    "SegmentDimension",
    "default_catalog",
    "engagement_predicate",
]
