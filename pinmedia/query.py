"""Bounding-box, time-window and tag filtering over the record index."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable

from pinmedia.datetime_utils import now_ms
from pinmedia.errors import ValidationError
from pinmedia.media import CATEGORIES, KINDS
from pinmedia.records import Record, RecordIndex

DEFAULT_MAX_POINTS = 5000


@dataclass(frozen=True)
class BBox:
    west: float
    south: float
    east: float
    north: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.west <= lon <= self.east and self.south <= lat <= self.north


def parse_bbox(raw: str | None) -> BBox | None:
    """``west,south,east,north`` to a BBox; absent means no spatial filter."""
    if raw is None or raw == "":
        return None
    parts = raw.split(",")
    if len(parts) != 4:
        raise ValidationError("bbox must be west,south,east,north")
    try:
        values = [float(part) for part in parts]
    except ValueError as exc:
        raise ValidationError("bbox must contain four numbers") from exc
    if not all(math.isfinite(value) for value in values):
        raise ValidationError("bbox must contain four finite numbers")
    return BBox(*values)


def parse_hours(raw: str | None, *, strict: bool = False) -> float | None:
    if raw is None or raw.strip() == "":
        return None
    try:
        hours = float(raw)
    except ValueError:
        hours = math.nan
    if math.isfinite(hours) and hours > 0:
        return hours
    if strict:
        raise ValidationError("hours must be a positive number")
    return None


def parse_limit(raw: str | None) -> int | None:
    if raw is None or raw.strip() == "":
        return None
    try:
        limit = int(raw)
    except ValueError as exc:
        raise ValidationError("limit must be an integer") from exc
    if limit <= 0:
        raise ValidationError("limit must be positive")
    return limit


def parse_tag(raw: str | None, allowed: tuple[str, ...], name: str) -> str | None:
    if raw is None or raw.strip() == "":
        return None
    value = raw.strip().lower()
    if value not in allowed:
        raise ValidationError(f"unknown {name}: {raw}")
    return value


class QueryEngine:
    def __init__(
        self,
        index: RecordIndex,
        *,
        max_points: int = DEFAULT_MAX_POINTS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if max_points <= 0:
            raise ValueError("max_points must be positive")
        self.index = index
        self.max_points = max_points
        self.clock = clock

    def build_predicate(
        self,
        *,
        bbox: BBox | None = None,
        hours: float | None = None,
        category: str | None = None,
        kind: str | None = None,
    ) -> Callable[[Record], bool]:
        cutoff = None
        if hours is not None:
            cutoff = self.clock() - hours * 3600 * 1000

        def matches(record: Record) -> bool:
            if cutoff is not None and record.reference_time < cutoff:
                return False
            if bbox is not None and not bbox.contains(record.lat, record.lon):
                return False
            if category is not None and record.category != category:
                return False
            if kind is not None and record.kind != kind:
                return False
            return True

        return matches

    def query(
        self,
        *,
        bbox: BBox | None = None,
        hours: float | None = None,
        category: str | None = None,
        kind: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        predicate = self.build_predicate(bbox=bbox, hours=hours, category=category, kind=kind)
        matched = self.index.scan(predicate)
        matched.sort(key=lambda r: (r.reference_time, r.id), reverse=True)
        cap = self.max_points if limit is None else min(limit, self.max_points)
        return [record.to_point() for record in matched[:cap]]

    def query_params(self, params: dict[str, list[str]], *, strict: bool = False) -> list[dict[str, Any]]:
        """Run a query straight from parsed URL query parameters."""

        def first(name: str) -> str | None:
            values = params.get(name)
            return values[0] if values else None

        return self.query(
            bbox=parse_bbox(first("bbox")),
            hours=parse_hours(first("hours"), strict=strict),
            category=parse_tag(first("category"), CATEGORIES, "category"),
            kind=parse_tag(first("kind"), KINDS, "kind"),
            limit=parse_limit(first("limit")),
        )
