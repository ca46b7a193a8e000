"""On-disk blob layout: staging, atomic placement and range-aware reads."""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from http import HTTPStatus
from pathlib import Path
from typing import BinaryIO, Iterator

from pinmedia.errors import IOFailure, NotFoundError
from pinmedia.media import EXTENSION_PATTERN

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 1024 * 256
RANGE_PATTERN = re.compile(r"bytes=(\d*)-(\d*)$")


def parse_range_header(header: str | None, file_size: int) -> tuple[int, int] | None:
    """Inclusive ``(start, end)`` for a single byte range, or None for full content."""
    if not header:
        return None
    match = RANGE_PATTERN.match(header.strip())
    if not match:
        return None

    start_str, end_str = match.groups()
    if start_str == "" and end_str == "":
        return None

    try:
        if start_str == "":
            length = int(end_str)
            if length <= 0:
                return None
            start = max(file_size - length, 0)
            end = file_size - 1
        else:
            start = int(start_str)
            end = int(end_str) if end_str else file_size - 1
    except ValueError:
        # Digit runs past the int conversion limit.
        return None

    if start < 0 or end < start or start >= file_size:
        return None
    end = min(end, file_size - 1)
    return start, end


@dataclass
class BlobStream:
    handle: BinaryIO
    total_size: int
    start: int
    end: int
    partial: bool

    @property
    def length(self) -> int:
        return self.end - self.start + 1 if self.total_size else 0

    @property
    def status(self) -> HTTPStatus:
        return HTTPStatus.PARTIAL_CONTENT if self.partial else HTTPStatus.OK

    @property
    def content_range(self) -> str | None:
        if not self.partial:
            return None
        return f"bytes {self.start}-{self.end}/{self.total_size}"

    def iter_chunks(self, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
        self.handle.seek(self.start)
        remaining = self.length
        while remaining > 0:
            chunk = self.handle.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk

    def read_all(self) -> bytes:
        return b"".join(self.iter_chunks())

    def close(self) -> None:
        self.handle.close()

    def __enter__(self) -> BlobStream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class MediaStore:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.media_dir = root / "media"
        self.staging_dir = root / "staging"
        self.media_dir.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    def stage(self) -> tuple[Path, BinaryIO]:
        """Open a fresh temp file for an incoming upload."""
        try:
            handle = tempfile.NamedTemporaryFile(
                mode="wb",
                dir=self.staging_dir,
                prefix="upload-",
                suffix=".part",
                delete=False,
            )
        except OSError as exc:
            raise IOFailure(f"cannot stage upload: {exc}") from exc
        return Path(handle.name), handle

    def blob_path_for(self, record_id: str, extension: str = "") -> Path:
        if not EXTENSION_PATTERN.match(extension or ""):
            extension = ""
        return self.media_dir / f"{record_id}{extension}"

    def place(self, record_id: str, staged_path: Path, extension: str = "") -> Path:
        target = self.blob_path_for(record_id, extension)
        try:
            os.replace(staged_path, target)
        except OSError as exc:
            raise IOFailure(f"blob placement failed for {record_id}: {exc}") from exc
        return target

    def discard(self, path: Path) -> bool:
        try:
            path.unlink(missing_ok=True)
            return True
        except OSError as exc:
            logger.warning("could not remove %s: %s", path.name, exc)
            return False

    def open(self, blob_path: str | Path | None, range_header: str | None = None) -> BlobStream:
        if not blob_path:
            raise NotFoundError("blob missing")
        path = Path(blob_path)
        try:
            handle = path.open("rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise NotFoundError("blob missing") from exc
        except OSError as exc:
            raise IOFailure(f"cannot open blob: {exc}") from exc

        try:
            size = os.fstat(handle.fileno()).st_size
        except OSError as exc:
            handle.close()
            raise IOFailure(f"cannot stat blob: {exc}") from exc

        file_range = parse_range_header(range_header, size)
        if file_range is None:
            return BlobStream(handle=handle, total_size=size, start=0, end=max(size - 1, 0), partial=False)
        start, end = file_range
        return BlobStream(handle=handle, total_size=size, start=start, end=end, partial=True)
