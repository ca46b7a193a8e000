"""Streaming ``multipart/form-data`` parsing for uploads.

The upload contract is one file part with any field name plus plain text
fields. File bytes are written straight into the media store's staging area
as they arrive.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from pinmedia.errors import IOFailure, LengthRequired, PayloadTooLarge, ValidationError
from pinmedia.store import MediaStore

READ_CHUNK_SIZE = 1024 * 64
MAX_FIELD_SIZE = 1024 * 64


@dataclass
class UploadedFile:
    field_name: str
    filename: str
    content_type: str
    path: Path
    size: int = 0


@dataclass
class UploadForm:
    fields: dict[str, str] = field(default_factory=dict)
    files: list[UploadedFile] = field(default_factory=list)

    @property
    def file(self) -> UploadedFile | None:
        return self.files[0] if self.files else None

    def get(self, name: str) -> str | None:
        return self.fields.get(name)


def _text(value: bytes | None) -> str:
    if value is None:
        return ""
    return value.decode("utf-8", errors="replace")


class _FormCollector:
    def __init__(self, store: MediaStore, max_files: int | None) -> None:
        self.store = store
        self.max_files = max_files
        self.form = UploadForm()
        self._headers: dict[bytes, bytes] = {}
        self._header_field = b""
        self._header_value = b""
        self._field_name: str | None = None
        self._field_value = bytearray()
        self._file: UploadedFile | None = None
        self._handle: BinaryIO | None = None
        self.in_part = False

    def callbacks(self) -> dict[str, object]:
        return {
            "on_part_begin": self.on_part_begin,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
        }

    def on_part_begin(self) -> None:
        self.in_part = True
        self._headers = {}
        self._field_name = None
        self._field_value = bytearray()
        self._file = None
        self._handle = None

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[self._header_field.strip().lower()] = self._header_value.strip()
        self._header_field = b""
        self._header_value = b""

    def on_headers_finished(self) -> None:
        _, options = parse_options_header(self._headers.get(b"content-disposition"))
        name = _text(options.get(b"name"))
        if b"filename" not in options:
            self._field_name = name
            return

        if self.max_files is not None and len(self.form.files) >= self.max_files:
            # Parts beyond the cap are read and dropped.
            return
        content_type, _ = parse_options_header(self._headers.get(b"content-type"))
        path, handle = self.store.stage()
        self._handle = handle
        self._file = UploadedFile(
            field_name=name,
            filename=_text(options.get(b"filename")),
            content_type=_text(content_type) or "application/octet-stream",
            path=path,
        )
        self.form.files.append(self._file)

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        chunk = data[start:end]
        if self._handle is not None and self._file is not None:
            try:
                self._handle.write(chunk)
            except OSError as exc:
                raise IOFailure(f"staging write failed: {exc}") from exc
            self._file.size += len(chunk)
        elif self._field_name is not None:
            if len(self._field_value) + len(chunk) > MAX_FIELD_SIZE:
                raise ValidationError(f"form field too large: {self._field_name}")
            self._field_value.extend(chunk)

    def on_part_end(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
            if self._file is not None and not self._file.filename and self._file.size == 0:
                # Browsers send an empty nameless part when no file was chosen.
                self.form.files.remove(self._file)
                self.store.discard(self._file.path)
            self._file = None
        elif self._field_name is not None:
            self.form.fields.setdefault(self._field_name, _text(bytes(self._field_value)))
        self._field_name = None
        self.in_part = False

    def abort(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        for uploaded in self.form.files:
            self.store.discard(uploaded.path)
        self.form.files.clear()


def parse_upload(
    content_type: str | None,
    content_length: str | None,
    stream: BinaryIO,
    store: MediaStore,
    *,
    max_bytes: int | None = None,
    max_files: int | None = 1,
) -> UploadForm:
    """Read a multipart body from ``stream`` into an UploadForm.

    ``max_files`` caps how many file parts get staged; later ones are read
    and thrown away. Staged files are cleaned up if parsing fails.
    """
    mime, options = parse_options_header(content_type)
    if mime.lower() != b"multipart/form-data":
        raise ValidationError("file is required (multipart/form-data expected)")
    boundary = options.get(b"boundary")
    if not boundary:
        raise ValidationError("multipart boundary missing")

    if content_length is None:
        raise LengthRequired()
    try:
        remaining = int(content_length)
    except ValueError as exc:
        raise ValidationError("invalid Content-Length") from exc
    if remaining < 0:
        raise ValidationError("invalid Content-Length")
    if max_bytes is not None and remaining > max_bytes:
        raise PayloadTooLarge()

    collector = _FormCollector(store, max_files)
    parser = MultipartParser(boundary, collector.callbacks())
    try:
        while remaining > 0:
            chunk = stream.read(min(READ_CHUNK_SIZE, remaining))
            if not chunk:
                raise ValidationError("upload body ended early")
            remaining -= len(chunk)
            parser.write(chunk)
        parser.finalize()
        if collector.in_part:
            raise ValidationError("multipart body is missing its closing boundary")
    except MultipartParseError as exc:
        collector.abort()
        raise ValidationError(f"malformed multipart body: {exc}") from exc
    except BaseException:
        collector.abort()
        raise
    return collector.form
