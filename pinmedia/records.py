"""Record model and the durable, lock-guarded record index.

The whole collection lives in memory (id -> record, hash -> id, insertion
order) and is persisted as one JSON snapshot per insert. Snapshots are
written to a temp file and swapped in with ``os.replace`` so a reader of the
backing file never sees a half-written collection.

Scans are linear in the number of records. That is fine for the volumes a
single-writer store is meant for; a geohash bucket index is the natural next
step if it stops being fine.
"""

from __future__ import annotations

import json
import logging
import math
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Callable

from pinmedia.errors import IOFailure
from pinmedia.media import CATEGORIES, DEFAULT_CATEGORY, KINDS, VIDEO_KIND

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Record:
    id: str
    content_hash: str | None
    lat: float
    lon: float
    accuracy: float
    geohash: str | None
    captured_at: int | None
    created_at: int | None
    kind: str
    mime: str
    size: int
    note: str
    category: str
    file_path: str | None

    @property
    def reference_time(self) -> int:
        if self.created_at is not None:
            return self.created_at
        return self.captured_at or 0

    def to_row(self) -> dict[str, Any]:
        return asdict(self)

    def to_point(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lat": self.lat,
            "lon": self.lon,
            "accuracy": self.accuracy,
            "geohash": self.geohash,
            "captured_at": self.captured_at,
            "created_at": self.created_at,
            "kind": self.kind,
            "category": self.category,
            "note": self.note,
            "mime": self.mime,
            "size": self.size,
        }


def _finite_or_zero(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    number = float(value)
    return number if math.isfinite(number) else 0.0


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return int(value)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def record_from_row(row: Any) -> Record | None:
    if not isinstance(row, dict):
        return None
    record_id = row.get("id")
    if not isinstance(record_id, str) or not record_id:
        return None
    kind = row.get("kind")
    category = row.get("category")
    size = row.get("size")
    return Record(
        id=record_id,
        content_hash=_optional_str(row.get("content_hash")),
        lat=_finite_or_zero(row.get("lat")),
        lon=_finite_or_zero(row.get("lon")),
        accuracy=_finite_or_zero(row.get("accuracy")),
        geohash=_optional_str(row.get("geohash")),
        captured_at=_optional_int(row.get("captured_at")),
        created_at=_optional_int(row.get("created_at")),
        kind=kind if kind in KINDS else VIDEO_KIND,
        mime=str(row.get("mime") or ""),
        size=int(size) if isinstance(size, int) and not isinstance(size, bool) else 0,
        note=str(row.get("note") or ""),
        category=category if category in CATEGORIES else DEFAULT_CATEGORY,
        file_path=_optional_str(row.get("file_path")),
    )


def load_rows(path: Path) -> list[Any]:
    if not path.exists():
        return []
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
        logger.warning("record store %s unreadable, starting empty: %s", path.name, exc)
        return []
    if not isinstance(payload, list):
        logger.warning("record store %s is not a list, starting empty", path.name)
        return []
    return payload


def save_rows_atomic(path: Path, rows: list[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(rows, handle, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class RecordIndex:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock = threading.Lock()
        self._records: list[Record] = []
        self._by_id: dict[str, Record] = {}
        self._id_by_hash: dict[str, str] = {}
        self._last_created_at = 0
        for row in load_rows(path):
            record = record_from_row(row)
            if record is None or record.id in self._by_id:
                continue
            self._remember(record)

    def _remember(self, record: Record) -> None:
        self._records.append(record)
        self._by_id[record.id] = record
        if record.content_hash and record.content_hash not in self._id_by_hash:
            self._id_by_hash[record.content_hash] = record.id
        if record.created_at is not None:
            self._last_created_at = max(self._last_created_at, record.created_at)

    def __len__(self) -> int:
        with self.lock:
            return len(self._records)

    def contains_id(self, record_id: str) -> bool:
        with self.lock:
            return record_id in self._by_id

    def find_by_id(self, record_id: str) -> Record | None:
        with self.lock:
            return self._by_id.get(record_id)

    def find_by_hash(self, content_hash: str) -> Record | None:
        with self.lock:
            record_id = self._id_by_hash.get(content_hash)
            return self._by_id.get(record_id) if record_id else None

    def snapshot(self) -> list[Record]:
        with self.lock:
            return list(self._records)

    def scan(self, predicate: Callable[[Record], bool] | None = None) -> list[Record]:
        records = self.snapshot()
        if predicate is None:
            return records
        return [record for record in records if predicate(record)]

    def insert(self, record: Record) -> Record:
        """Append ``record`` and persist the collection.

        Returns the record now indexed under its content hash: the argument
        itself (with ``created_at`` clamped to stay monotonic) or, if another
        insert with the same hash got there first, the existing record.
        """
        with self.lock:
            if record.content_hash:
                existing_id = self._id_by_hash.get(record.content_hash)
                if existing_id is not None:
                    return self._by_id[existing_id]
            if record.id in self._by_id:
                raise ValueError(f"duplicate record id: {record.id}")

            created_at = max(record.created_at or 0, self._last_created_at)
            if created_at != record.created_at:
                record = replace(record, created_at=created_at)

            rows = [r.to_row() for r in self._records]
            rows.append(record.to_row())
            try:
                save_rows_atomic(self.path, rows)
            except OSError as exc:
                raise IOFailure(f"record store write failed: {exc}") from exc
            self._remember(record)
            return record
