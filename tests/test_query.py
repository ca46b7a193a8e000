"""Tests for bbox/time-window parsing and the query engine."""

from __future__ import annotations

import pytest

from pinmedia.errors import ValidationError
from pinmedia.query import BBox, QueryEngine, parse_bbox, parse_hours, parse_limit
from pinmedia.records import Record

NOW = 1_700_000_000_000
HOUR = 3600 * 1000


def point(record_id: str, *, lon: float, lat: float, created_at: int = NOW, **extra) -> Record:
    fields = dict(
        id=record_id,
        content_hash=f"hash-{record_id}",
        lat=lat,
        lon=lon,
        accuracy=0.0,
        geohash=None,
        captured_at=created_at,
        created_at=created_at,
        kind="image",
        mime="image/jpeg",
        size=1,
        note="",
        category="other",
        file_path=f"/tmp/{record_id}",
    )
    fields.update(extra)
    return Record(**fields)


@pytest.fixture
def engine(index):
    return QueryEngine(index, clock=lambda: NOW)


class TestParseBBox:
    def test_absent(self):
        assert parse_bbox(None) is None
        assert parse_bbox("") is None

    def test_valid(self):
        assert parse_bbox("0,0,30,30") == BBox(0.0, 0.0, 30.0, 30.0)
        assert parse_bbox("-10.5, -20, 10.5 ,20") == BBox(-10.5, -20.0, 10.5, 20.0)

    @pytest.mark.parametrize("raw", ["1,2,3", "1,2,3,4,5", "a,b,c,d", "0,0,inf,30", "0,nan,30,30"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            parse_bbox(raw)


class TestParseHours:
    def test_values(self):
        assert parse_hours(None) is None
        assert parse_hours("5") == 5.0
        assert parse_hours("1.5") == 1.5

    @pytest.mark.parametrize("raw", ["abc", "0", "-3", "nan"])
    def test_lenient_ignores_bad_values(self, raw):
        assert parse_hours(raw) is None

    @pytest.mark.parametrize("raw", ["abc", "0", "-3"])
    def test_strict_rejects_bad_values(self, raw):
        with pytest.raises(ValidationError):
            parse_hours(raw, strict=True)


def test_parse_limit():
    assert parse_limit(None) is None
    assert parse_limit("10") == 10
    with pytest.raises(ValidationError):
        parse_limit("0")
    with pytest.raises(ValidationError):
        parse_limit("ten")


def test_bbox_filter(index, engine):
    index.insert(point("first", lon=10, lat=20))
    index.insert(point("second", lon=50, lat=60))
    result = engine.query(bbox=parse_bbox("0,0,30,30"))
    assert [p["id"] for p in result] == ["first"]


def test_bbox_edges_are_inclusive(index, engine):
    index.insert(point("edge", lon=30, lat=0))
    assert [p["id"] for p in engine.query(bbox=BBox(0, 0, 30, 30))] == ["edge"]


def test_time_window(index, engine):
    index.insert(point("old", lon=0, lat=0, created_at=NOW - 10 * HOUR))
    index.insert(point("new", lon=0, lat=0, created_at=NOW))
    assert [p["id"] for p in engine.query(hours=5)] == ["new"]
    assert {p["id"] for p in engine.query(hours=24)} == {"new", "old"}


def test_filters_combine(index, engine):
    index.insert(point("inside-old", lon=10, lat=10, created_at=NOW - 48 * HOUR))
    index.insert(point("inside-new", lon=10, lat=10, created_at=NOW))
    index.insert(point("outside-new", lon=100, lat=10, created_at=NOW))
    result = engine.query(bbox=BBox(0, 0, 30, 30), hours=24)
    assert [p["id"] for p in result] == ["inside-new"]


def test_results_newest_first_and_capped(index):
    for i in reversed(range(5)):
        index.insert(point(f"p{i}", lon=0, lat=0, created_at=NOW - i * HOUR))
    engine = QueryEngine(index, max_points=3, clock=lambda: NOW)
    assert [p["id"] for p in engine.query()] == ["p0", "p1", "p2"]
    assert [p["id"] for p in engine.query(limit=2)] == ["p0", "p1"]
    assert len(engine.query(limit=100)) == 3


def test_tag_filters(index, engine):
    index.insert(point("fire-pic", lon=0, lat=0, category="fire"))
    index.insert(point("fire-vid", lon=0, lat=0, category="fire", kind="video", mime="video/mp4"))
    index.insert(point("police", lon=0, lat=0, category="police"))
    assert {p["id"] for p in engine.query(category="fire")} == {"fire-pic", "fire-vid"}
    assert [p["id"] for p in engine.query(category="fire", kind="video")] == ["fire-vid"]


def test_query_params(index, engine):
    index.insert(point("a", lon=10, lat=20, category="traffic"))
    index.insert(point("b", lon=50, lat=60))
    params = {"bbox": ["0,0,30,30"], "category": ["Traffic"]}
    assert [p["id"] for p in engine.query_params(params)] == ["a"]
    with pytest.raises(ValidationError):
        engine.query_params({"bbox": ["1,2"]})
    with pytest.raises(ValidationError):
        engine.query_params({"kind": ["audio"]})


def test_projection_never_exposes_blob_path(index, engine):
    index.insert(point("a", lon=0, lat=0))
    (result,) = engine.query()
    assert "file_path" not in result
    assert result["lat"] == 0
    assert result["captured_at"] == NOW
