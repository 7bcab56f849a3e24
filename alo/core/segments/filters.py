"""Segment filter values and normalization of filter sets."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal

from alo.utils.exceptions import InvalidSegmentFilters

DuplicatePolicy = Literal["reject", "merge"]


@dataclass(frozen=True)
class SegmentFilter:
    """A dimension id plus the raw values accepted for it (OR within the set)."""

    type: str
    values: frozenset[str]

    @classmethod
    def of(cls, segment_type: str, values: Iterable[object]) -> "SegmentFilter":
        cleaned = {str(value).strip() for value in values if value is not None}
        cleaned.discard("")
        return cls(type=str(segment_type).strip(), values=frozenset(cleaned))

    @property
    def is_empty(self) -> bool:
        return not self.values


def normalize_filters(
    filters: Iterable[SegmentFilter], policy: DuplicatePolicy = "reject"
) -> list[SegmentFilter]:
    """Return the filters with at most one entry per dimension.

    First-seen order is preserved. Under ``reject`` a repeated dimension raises
    :class:`InvalidSegmentFilters`; under ``merge`` the value sets are unioned.
    """

    if policy not in ("reject", "merge"):
        raise ValueError(f"Unsupported duplicate policy: {policy}")

    merged: dict[str, set[str]] = {}
    duplicates: set[str] = set()
    for item in filters:
        if item.type not in merged:
            merged[item.type] = set(item.values)
        elif policy == "merge":
            merged[item.type] |= item.values
        else:
            duplicates.add(item.type)

    if duplicates:
        raise InvalidSegmentFilters(
            "Each segment type may only be selected once per campaign",
            {"duplicates": sorted(duplicates)},
        )
    return [SegmentFilter(type=key, values=frozenset(values)) for key, values in merged.items()]


__all__ = ["DuplicatePolicy", "SegmentFilter", "normalize_filters"]
