"""Audience resolution: turn a campaign's segment filters into subscribers."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator

from loguru import logger
from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from alo.config import settings
from alo.core.segments import SegmentCatalog, SegmentFilter, default_catalog, normalize_filters
from alo.core.segments.filters import DuplicatePolicy
from alo.db.models.subscriber import Subscriber
from alo.utils.cache import build_cache_key, cache_backend
from alo.utils.clock import Clock, utcnow


@dataclass
class Audience:
    """A resolved filter set bound to a session.

    Nothing is materialized up front: :meth:`count` runs a single aggregate
    query and :meth:`batches` pages through matching ids by keyset, so a
    consumer can stop and later resume from the last id it handled.
    """

    db: Session
    filters: tuple[SegmentFilter, ...]
    condition: ColumnElement
    resolved_at: datetime

    @property
    def matches_nothing(self) -> bool:
        return any(item.is_empty for item in self.filters)

    def count(self) -> int:
        if self.matches_nothing:
            return 0
        total = self.db.scalar(select(func.count(Subscriber.id)).where(self.condition))
        return int(total or 0)

    def batches(
        self,
        batch_size: int | None = None,
        *,
        after_id: int | None = None,
        partition: tuple[int, int] | None = None,
    ) -> Iterator[list[int]]:
        """Yield ascending lists of subscriber ids, at most ``batch_size`` each.

        ``partition=(index, total)`` restricts the walk to ids where
        ``id % total == index`` so independent consumers get disjoint slices.
        """

        size = batch_size or settings.DELIVERY_BATCH_SIZE
        if size < 1:
            raise ValueError("batch_size must be positive")
        if self.matches_nothing:
            return

        base = select(Subscriber.id).where(self.condition)
        if partition is not None:
            index, total = partition
            if total < 1 or not 0 <= index < total:
                raise ValueError(f"Invalid partition {partition!r}")
            base = base.where(Subscriber.id % total == index)

        cursor = after_id
        while True:
            stmt = base if cursor is None else base.where(Subscriber.id > cursor)
            ids = list(self.db.scalars(stmt.order_by(Subscriber.id).limit(size)).all())
            if not ids:
                return
            yield ids
            if len(ids) < size:
                return
            cursor = ids[-1]

    def members(
        self,
        batch_size: int | None = None,
        *,
        after_id: int | None = None,
        partition: tuple[int, int] | None = None,
    ) -> Iterator[int]:
        for batch in self.batches(batch_size, after_id=after_id, partition=partition):
            yield from batch


class AudienceResolver:
    """Evaluate segment filters against the subscriber table.

    Filters are ANDed across dimensions and ORed within a dimension's value
    set; only active subscribers are ever part of an audience. No filters
    means every active subscriber.
    """

    COUNT_NAMESPACE = "segments:count"

    def __init__(
        self,
        db: Session,
        *,
        catalog: SegmentCatalog = default_catalog,
        clock: Clock = utcnow,
        duplicate_policy: DuplicatePolicy | None = None,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.clock = clock
        self.duplicate_policy = duplicate_policy or settings.SEGMENT_DUPLICATE_POLICY

    def resolve(self, filters: Iterable[SegmentFilter], *, now: datetime | None = None) -> Audience:
        """Build the audience for ``filters``.

        Raises :class:`~alo.utils.exceptions.UnknownDimension` for unregistered
        dimensions and :class:`~alo.utils.exceptions.InvalidSegmentFilters`
        for duplicates rejected by the configured policy.
        """

        normalized = normalize_filters(filters, self.duplicate_policy)
        moment = now or self.clock()
        clauses = [Subscriber.active.is_(True)]
        clauses.extend(self.catalog.predicate(item, moment) for item in normalized)
        return Audience(
            db=self.db,
            filters=tuple(normalized),
            condition=and_(*clauses),
            resolved_at=moment,
        )

    def count(self, filters: Iterable[SegmentFilter], *, use_cache: bool = True) -> int:
        """Audience size for interactive previews, cached for a few seconds."""

        audience = self.resolve(filters)
        cache_key = build_cache_key(
            filters=sorted((item.type, sorted(item.values)) for item in audience.filters)
        )
        if use_cache:
            cached = cache_backend.get(self.COUNT_NAMESPACE, cache_key)
            if cached is not None:
                return int(cached)

        total = audience.count()
        if use_cache:
            cache_backend.set(
                self.COUNT_NAMESPACE,
                cache_key,
                total,
                ttl_seconds=settings.SEGMENT_COUNT_CACHE_TTL_SECONDS,
            )
        logger.debug(
            "Audience counted",
            dimensions=[item.type for item in audience.filters],
            count=total,
        )
        return total


__all__ = ["Audience", "AudienceResolver"]
