"""Client timestamp parsing for ``captured_at``."""

from __future__ import annotations

import math
import re
import time
from datetime import datetime

# Numeric epochs at or above this are milliseconds, below it seconds.
EPOCH_MS_THRESHOLD = 1e11

# Camera-style "2023:07:04 10:11:12", optionally followed by an offset.
EXIF_DATE = re.compile(r"^(\d{4}):(\d{2}):(\d{2})[ T]")
COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_client_datetime(text: str) -> datetime | None:
    """ISO-8601 or camera-style timestamp; naive values are local time."""
    text = text.strip().replace("\x00", "")
    if not text:
        return None
    text = EXIF_DATE.sub(r"\1-\2-\3T", text, count=1)
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = COMPACT_OFFSET.sub(r"\1:\2", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def parse_epoch_ms(value: object) -> int | None:
    """Client timestamp to epoch milliseconds, or None when unparseable."""
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            parsed = parse_client_datetime(value)
            if parsed is None:
                return None
            try:
                return int(parsed.timestamp() * 1000)
            except (OverflowError, OSError, ValueError):
                return None

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if not math.isfinite(value):
            return None
        if abs(value) >= EPOCH_MS_THRESHOLD:
            return int(value)
        return int(value * 1000)
    return None
