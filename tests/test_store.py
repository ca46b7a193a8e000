"""Tests for blob placement, range parsing and range reads."""

from __future__ import annotations

from http import HTTPStatus

import pytest

from pinmedia.errors import NotFoundError
from pinmedia.store import MediaStore, parse_range_header


BLOB = bytes(range(256)) * 4  # 1024 bytes


class TestParseRangeHeader:
    def test_absent(self):
        assert parse_range_header(None, 100) is None
        assert parse_range_header("", 100) is None

    def test_closed_range(self):
        assert parse_range_header("bytes=0-99", 1000) == (0, 99)

    def test_open_ended(self):
        assert parse_range_header("bytes=500-", 1000) == (500, 999)

    def test_suffix(self):
        assert parse_range_header("bytes=-100", 1000) == (900, 999)
        assert parse_range_header("bytes=-5000", 1000) == (0, 999)

    def test_end_is_clamped(self):
        assert parse_range_header("bytes=10-99999", 1000) == (10, 999)

    @pytest.mark.parametrize(
        "header",
        [
            "bytes=abc",
            "bytes=-",
            "items=0-10",
            "bytes=0-10,20-30",
            "bytes=50-10",
            "bytes=1000-",
            "bytes=-0",
            "bytes=0-" + "9" * 5000,
            "bytes=" + "9" * 5000 + "-",
            "bytes=-" + "9" * 5000,
        ],
    )
    def test_invalid_means_full_content(self, header):
        assert parse_range_header(header, 1000) is None

    def test_empty_file_never_ranges(self):
        assert parse_range_header("bytes=0-0", 0) is None


def _staged(store: MediaStore, data: bytes):
    path, handle = store.stage()
    with handle:
        handle.write(data)
    return path


def test_place_moves_staged_file(store):
    staged = _staged(store, BLOB)
    placed = store.place("abc123", staged, ".mp4")
    assert placed == store.media_dir / "abc123.mp4"
    assert placed.read_bytes() == BLOB
    assert not staged.exists()


def test_place_drops_unsafe_extension(store):
    staged = _staged(store, BLOB)
    placed = store.place("abc123", staged, "/../../x")
    assert placed.name == "abc123"


def test_open_full(store):
    placed = store.place("full", _staged(store, BLOB), ".mp4")
    with store.open(placed) as stream:
        assert stream.status == HTTPStatus.OK
        assert stream.length == len(BLOB)
        assert stream.content_range is None
        assert stream.read_all() == BLOB


def test_open_range(store):
    placed = store.place("ranged", _staged(store, BLOB), ".mp4")
    with store.open(placed, "bytes=0-99") as stream:
        assert stream.status == HTTPStatus.PARTIAL_CONTENT
        assert stream.length == 100
        assert stream.content_range == f"bytes 0-99/{len(BLOB)}"
        assert stream.read_all() == BLOB[:100]


def test_open_range_small_chunks(store):
    placed = store.place("chunks", _staged(store, BLOB), "")
    with store.open(placed, "bytes=100-349") as stream:
        assert b"".join(stream.iter_chunks(chunk_size=7)) == BLOB[100:350]


def test_open_malformed_range_returns_full(store):
    placed = store.place("bad", _staged(store, BLOB), "")
    with store.open(placed, "bytes=oops") as stream:
        assert stream.status == HTTPStatus.OK
        assert stream.read_all() == BLOB


def test_open_missing_blob_is_not_found(store):
    placed = store.place("gone", _staged(store, BLOB), ".webm")
    placed.unlink()
    with pytest.raises(NotFoundError):
        store.open(placed)


def test_open_without_path_is_not_found(store):
    with pytest.raises(NotFoundError):
        store.open(None)


def test_discard_is_idempotent(store):
    staged = _staged(store, b"x")
    assert store.discard(staged)
    assert store.discard(staged)
    assert not staged.exists()
