"""Shared media kind, category and content-type helpers."""

from __future__ import annotations

import mimetypes
import re
from pathlib import Path

IMAGE_KIND = "image"
VIDEO_KIND = "video"
KINDS = (IMAGE_KIND, VIDEO_KIND)

CATEGORIES = (
    "incident",
    "event",
    "traffic",
    "fire",
    "disaster",
    "police",
    "other",
)
DEFAULT_CATEGORY = "other"

NOTE_MAX_LENGTH = 500

VIDEO_CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
}
FALLBACK_VIDEO_TYPE = "video/mp4"
FALLBACK_IMAGE_TYPE = "image/jpeg"

EXTENSION_PATTERN = re.compile(r"^\.[a-z0-9]{1,10}$")


def kind_for_media_type(media_type: str | None) -> str:
    if (media_type or "").lower().startswith("image/"):
        return IMAGE_KIND
    return VIDEO_KIND


def normalize_category(value: object) -> str:
    text = str(value or "").strip().lower()
    if text in CATEGORIES:
        return text
    return DEFAULT_CATEGORY


def truncate_note(value: object) -> str:
    return str(value or "")[:NOTE_MAX_LENGTH]


def safe_extension(filename: str | None, media_type: str | None = None) -> str:
    """Best-effort file extension for a stored blob, or an empty string.

    The client filename wins; the declared media type is only consulted
    when the filename carries no usable suffix.
    """
    suffix = Path(filename or "").suffix.lower()
    if EXTENSION_PATTERN.match(suffix):
        return suffix
    if media_type:
        guessed = mimetypes.guess_extension(media_type.split(";")[0].strip().lower()) or ""
        if EXTENSION_PATTERN.match(guessed):
            return guessed
    return ""


def content_type_for(kind: str, blob_path: str | Path, declared_type: str | None = None) -> str:
    if kind == IMAGE_KIND:
        declared = (declared_type or "").split(";")[0].strip().lower()
        if declared.startswith("image/"):
            return declared
        return FALLBACK_IMAGE_TYPE
    suffix = Path(blob_path).suffix.lower()
    return VIDEO_CONTENT_TYPES.get(suffix, FALLBACK_VIDEO_TYPE)
