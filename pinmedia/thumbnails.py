"""Square JPEG thumbnails for map pins, generated lazily and cached.

Images and videos share one cropping path: Pillow fits the picture to a
square tile. For videos ffmpeg only decodes a single frame, piped back as
PNG. When neither works the pin gets an SVG tile tinted by its category.
"""

from __future__ import annotations

import io
import logging
import subprocess
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from pinmedia.media import DEFAULT_CATEGORY, IMAGE_KIND, VIDEO_KIND
from pinmedia.records import Record

logger = logging.getLogger(__name__)

THUMB_SIZE = 320
JPEG_QUALITY = 84
FFMPEG_TIMEOUT = 30
# Seek offsets tried in order; clips shorter than a second only have frame 0.
FRAME_SEEK_SECONDS = ("1", "0")

PIN_COLORS = {
    "incident": "#d9822b",
    "event": "#4a7fc1",
    "traffic": "#c9a227",
    "fire": "#c0392b",
    "disaster": "#7d3c98",
    "police": "#1f3a93",
    "other": "#5d6d7e",
}

_KIND_GLYPHS = {
    VIDEO_KIND: "<polygon points='138,128 198,160 138,192' fill='white'/>",
    IMAGE_KIND: (
        "<circle cx='134' cy='136' r='14' fill='white' opacity='0.8'/>"
        "<polygon points='100,200 148,156 176,182 204,160 232,200' fill='white'/>"
    ),
}

_PLACEHOLDER_TEMPLATE = (
    "<svg xmlns='http://www.w3.org/2000/svg' width='{size}' height='{size}' viewBox='0 0 320 320'>"
    "<rect width='320' height='320' fill='{color}'/>"
    "<circle cx='160' cy='160' r='84' fill='rgba(255,255,255,0.18)'/>"
    "{glyph}"
    "<text x='160' y='282' text-anchor='middle' font-family='sans-serif' font-size='26' "
    "fill='white'>{label}</text>"
    "</svg>"
)


def placeholder_for(record: Record) -> bytes:
    """SVG tile for a pin whose media cannot be thumbnailed."""
    category = record.category if record.category in PIN_COLORS else DEFAULT_CATEGORY
    svg = _PLACEHOLDER_TEMPLATE.format(
        size=THUMB_SIZE,
        color=PIN_COLORS[category],
        glyph=_KIND_GLYPHS.get(record.kind, _KIND_GLYPHS[VIDEO_KIND]),
        label=category.upper(),
    )
    return svg.encode("utf-8")


def _save_square(img: Image.Image, target: Path, size: int) -> None:
    normalized = ImageOps.exif_transpose(img)
    fitted = ImageOps.fit(normalized.convert("RGB"), (size, size), method=Image.Resampling.LANCZOS)
    target.parent.mkdir(parents=True, exist_ok=True)
    partial = target.with_suffix(".tmp")
    fitted.save(partial, "JPEG", quality=JPEG_QUALITY, optimize=True)
    partial.replace(target)


def create_image_thumbnail(source: Path, target: Path, size: int = THUMB_SIZE) -> bool:
    try:
        with Image.open(source) as img:
            _save_square(img, target, size)
        return True
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.debug("image thumbnail failed for %s: %s", source.name, exc)
        return False


def grab_video_frame(source: Path, seek: str = "0") -> bytes | None:
    """One decoded frame of ``source`` as PNG bytes, or None."""
    command = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "error",
        "-ss",
        seek,
        "-i",
        str(source),
        "-frames:v",
        "1",
        "-f",
        "image2pipe",
        "-vcodec",
        "png",
        "-",
    ]
    result = subprocess.run(command, capture_output=True, check=False, timeout=FFMPEG_TIMEOUT)
    if result.returncode != 0 or not result.stdout:
        return None
    return result.stdout


def create_video_thumbnail(source: Path, target: Path, size: int = THUMB_SIZE) -> bool:
    for seek in FRAME_SEEK_SECONDS:
        try:
            frame = grab_video_frame(source, seek)
        except FileNotFoundError:
            logger.debug("ffmpeg not available; no video thumbnail for %s", source.name)
            return False
        except subprocess.TimeoutExpired:
            logger.warning("ffmpeg timed out on %s", source.name)
            return False
        if frame is None:
            continue
        try:
            with Image.open(io.BytesIO(frame)) as img:
                _save_square(img, target, size)
            return True
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            logger.debug("unreadable frame from %s: %s", source.name, exc)
    return False


class ThumbnailCache:
    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def ensure(self, record: Record) -> Path | None:
        """Cached thumbnail for ``record``, building it on first use.

        Returns None when the blob is missing or no thumbnail can be made; a
        ``.failed`` marker stops repeated attempts on a broken source.
        """
        target = self.cache_dir / f"{record.id}.jpg"
        failed_marker = self.cache_dir / f"{record.id}.failed"
        if target.exists():
            return target
        if failed_marker.exists():
            return None

        if not record.file_path:
            return None
        source = Path(record.file_path)
        if not source.is_file():
            return None

        if record.kind == IMAGE_KIND:
            created = create_image_thumbnail(source, target)
        else:
            created = create_video_thumbnail(source, target)
        if created:
            return target
        failed_marker.write_text("failed", encoding="utf-8")
        return None
