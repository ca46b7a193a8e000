"""Streaming content digests used as the dedup key."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import BinaryIO

from pinmedia.errors import IOFailure

HASH_ALGORITHM = "sha256"
CHUNK_SIZE = 1024 * 256


def hash_stream(stream: BinaryIO, *, chunk_size: int = CHUNK_SIZE) -> str:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    digest = hashlib.new(HASH_ALGORITHM)
    try:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    except OSError as exc:
        raise IOFailure(f"hashing failed: {exc}") from exc
    return digest.hexdigest()


def hash_file(path: Path, *, chunk_size: int = CHUNK_SIZE) -> str:
    try:
        with path.open("rb") as src:
            return hash_stream(src, chunk_size=chunk_size)
    except FileNotFoundError as exc:
        raise IOFailure(f"staged upload vanished: {path.name}") from exc
    except OSError as exc:
        raise IOFailure(f"hashing failed: {exc}") from exc
