"""Upload ingestion: hash, dedup, place the blob, index the record.

One upload moves through Received -> Hashing -> DedupCheck ->
(DuplicateResolved | Persisting) -> Indexed -> Responded. The blob is always
placed before the record is indexed, so an indexed record never points at a
blob that was not written.
"""

from __future__ import annotations

import logging
import math
import secrets
from dataclasses import dataclass
from typing import Callable

from pinmedia import geohash
from pinmedia.datetime_utils import now_ms, parse_epoch_ms
from pinmedia.errors import IOFailure, ValidationError
from pinmedia.forms import UploadedFile, UploadForm
from pinmedia.hashing import hash_file
from pinmedia.media import kind_for_media_type, normalize_category, safe_extension, truncate_note
from pinmedia.records import Record, RecordIndex
from pinmedia.store import MediaStore

logger = logging.getLogger(__name__)

ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
ID_LENGTH = 12


def new_record_id() -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(ID_LENGTH))


def parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        number = float(value.strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lon: float
    accuracy: float


def parse_coordinates(form: UploadForm, *, strict: bool) -> Coordinates:
    lat = parse_float(form.get("lat"))
    lon = parse_float(form.get("lon"))
    accuracy = parse_float(form.get("accuracy"))
    if not strict:
        return Coordinates(lat=lat or 0.0, lon=lon or 0.0, accuracy=accuracy or 0.0)

    if lat is None or not -90 <= lat <= 90:
        raise ValidationError("lat must be a number between -90 and 90")
    if lon is None or not -180 <= lon <= 180:
        raise ValidationError("lon must be a number between -180 and 180")
    raw_accuracy = form.get("accuracy")
    if raw_accuracy is not None and raw_accuracy.strip() != "":
        if accuracy is None or accuracy < 0:
            raise ValidationError("accuracy must be a non-negative number")
    return Coordinates(lat=lat, lon=lon, accuracy=accuracy or 0.0)


@dataclass(frozen=True)
class IngestResult:
    record: Record
    duplicate: bool

    @property
    def id(self) -> str:
        return self.record.id

    def to_response(self) -> dict[str, object]:
        return {"ok": True, "id": self.record.id, "duplicate": self.duplicate}


class IngestionPipeline:
    def __init__(
        self,
        store: MediaStore,
        index: RecordIndex,
        *,
        strict: bool = False,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = new_record_id,
    ) -> None:
        self.store = store
        self.index = index
        self.strict = strict
        self.clock = clock
        self.id_factory = id_factory

    def ingest(self, form: UploadForm) -> IngestResult:
        """Run one parsed upload through the pipeline.

        Every staged file in ``form`` is either placed or discarded before
        this returns or raises.
        """
        try:
            upload = self._accept(form)
        except BaseException:
            self._discard_staged(form.files)
            raise
        self._discard_staged(form.files[1:])

        try:
            content_hash = hash_file(upload.path)
            existing = self.index.find_by_hash(content_hash)
            if existing is not None:
                logger.info("duplicate upload resolved to %s", existing.id)
                self.store.discard(upload.path)
                return IngestResult(record=existing, duplicate=True)
            coordinates = parse_coordinates(form, strict=self.strict)
        except BaseException:
            self.store.discard(upload.path)
            raise

        return self._persist(upload, form, content_hash, coordinates)

    def _accept(self, form: UploadForm) -> UploadedFile:
        upload = form.file
        if upload is None:
            raise ValidationError("file is required")
        if self.strict and len(form.files) > 1:
            raise ValidationError("exactly one file part is allowed")
        return upload

    def _discard_staged(self, files: list[UploadedFile]) -> None:
        for uploaded in files:
            self.store.discard(uploaded.path)

    def _new_id(self) -> str:
        while True:
            record_id = self.id_factory()
            if not self.index.contains_id(record_id):
                return record_id

    def _persist(
        self,
        upload: UploadedFile,
        form: UploadForm,
        content_hash: str,
        coordinates: Coordinates,
    ) -> IngestResult:
        now = self.clock()
        record_id = self._new_id()
        extension = safe_extension(upload.filename, upload.content_type)
        try:
            blob_path = self.store.place(record_id, upload.path, extension)
        except IOFailure:
            self.store.discard(upload.path)
            raise

        captured_at = parse_epoch_ms(form.get("captured_at"))
        record = Record(
            id=record_id,
            content_hash=content_hash,
            lat=coordinates.lat,
            lon=coordinates.lon,
            accuracy=coordinates.accuracy,
            geohash=geohash.encode(coordinates.lat, coordinates.lon),
            captured_at=captured_at if captured_at is not None else now,
            created_at=now,
            kind=kind_for_media_type(upload.content_type),
            mime=upload.content_type,
            size=upload.size,
            note=truncate_note(form.get("note")),
            category=normalize_category(form.get("category")),
            file_path=str(blob_path),
        )

        try:
            stored = self.index.insert(record)
        except BaseException:
            if not self.store.discard(blob_path):
                logger.error("orphaned blob left behind for %s", record_id)
            raise

        if stored.id != record.id:
            # A concurrent upload of the same bytes was indexed first.
            logger.info("duplicate upload resolved to %s after placement", stored.id)
            self.store.discard(blob_path)
            return IngestResult(record=stored, duplicate=True)

        logger.info("indexed %s %s (%d bytes)", stored.kind, stored.id, stored.size)
        return IngestResult(record=stored, duplicate=False)
