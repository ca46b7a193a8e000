#!/usr/bin/env python3
"""Geotagged media pin server.

Clients upload photos and videos with a location, the map front-end lists
pins with ``/map-points`` and plays media through ``/media/<id>`` with byte
range support.

Run locally and POST to http://127.0.0.1:3000/upload
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

from pinmedia.errors import MediaError, NotFoundError
from pinmedia.forms import parse_upload
from pinmedia.ingest import IngestionPipeline
from pinmedia.media import content_type_for
from pinmedia.query import DEFAULT_MAX_POINTS, QueryEngine
from pinmedia.records import RecordIndex
from pinmedia.store import MediaStore
from pinmedia.thumbnails import ThumbnailCache, placeholder_for

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000
DEFAULT_DATA_DIR = "data"
DEFAULT_MAX_UPLOAD_MB = 512

MEDIA_ROUTE = re.compile(r"^/(?:media|video)/([^/]+)$")
THUMB_ROUTE = re.compile(r"^/thumb/([^/]+)$")


@dataclass(frozen=True)
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    strict_validation: bool = False
    max_points: int = DEFAULT_MAX_POINTS
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_MB * 1024 * 1024


class MediaApp:
    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        data_dir = config.data_dir
        data_dir.mkdir(parents=True, exist_ok=True)
        self.store = MediaStore(data_dir)
        self.index = RecordIndex(data_dir / "points.json")
        self.pipeline = IngestionPipeline(self.store, self.index, strict=config.strict_validation)
        self.engine = QueryEngine(self.index, max_points=config.max_points)
        self.thumbnails = ThumbnailCache(data_dir / "cache" / "thumbs")
        logger.info("loaded %d records from %s", len(self.index), self.index.path)


class MediaPinServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], app: MediaApp) -> None:
        super().__init__(address, MediaPinHandler)
        self.app = app


class MediaPinHandler(BaseHTTPRequestHandler):
    server_version = "PinMedia/1.0"
    server: MediaPinServer

    @property
    def app(self) -> MediaApp:
        return self.server.app

    def log_message(self, fmt: str, *args: Any) -> None:
        logger.info("%s - %s", self.client_address[0], fmt % args)

    @staticmethod
    def _is_client_disconnect(exc: BaseException) -> bool:
        if isinstance(exc, (BrokenPipeError, ConnectionResetError)):
            return True
        if isinstance(exc, OSError):
            return exc.errno in {32, 54, 104}
        return False

    def _safe_end_headers(self) -> bool:
        try:
            self.end_headers()
            return True
        except OSError as exc:
            if self._is_client_disconnect(exc):
                return False
            raise

    def _safe_write(self, data: bytes) -> bool:
        try:
            self.wfile.write(data)
            return True
        except OSError as exc:
            if self._is_client_disconnect(exc):
                return False
            raise

    def _send_cors_headers(self) -> None:
        self.send_header("Access-Control-Allow-Origin", "*")

    def _json_response(self, payload: dict[str, Any], status: int = 200) -> None:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self._send_cors_headers()
        if not self._safe_end_headers():
            return
        if self.command != "HEAD":
            self._safe_write(body)

    def _error_response(self, exc: MediaError) -> None:
        if exc.status >= 500:
            logger.error("%s %s failed: %s", self.command, self.path, exc, exc_info=exc)
        self._json_response({"ok": False, "error": exc.client_message}, status=exc.status)

    def _run(self, handler: Any, *args: Any) -> None:
        try:
            handler(*args)
        except MediaError as exc:
            self._error_response(exc)
        except Exception as exc:  # noqa: BLE001
            if self._is_client_disconnect(exc):
                return
            logger.exception("%s %s crashed", self.command, self.path)
            self._json_response({"ok": False, "error": "internal error"}, status=500)

    def do_OPTIONS(self) -> None:  # noqa: N802
        self.send_response(HTTPStatus.NO_CONTENT)
        self._send_cors_headers()
        self.send_header("Access-Control-Allow-Methods", "GET, HEAD, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type, Range")
        self.send_header("Content-Length", "0")
        self._safe_end_headers()

    def do_GET(self) -> None:  # noqa: N802
        self._run(self._route_get)

    def do_HEAD(self) -> None:  # noqa: N802
        self._run(self._route_get)

    def do_POST(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path != "/upload":
            self._run(self._not_found)
            return
        self._run(self._handle_upload)

    def _not_found(self) -> None:
        raise NotFoundError("not found")

    def _route_get(self) -> None:
        parsed = urlparse(self.path)

        if parsed.path == "/health":
            self._json_response({"ok": True, "records": len(self.app.index)})
            return

        if parsed.path == "/map-points":
            params = parse_qs(parsed.query)
            points = self.app.engine.query_params(params, strict=self.app.config.strict_validation)
            self._json_response({"points": points})
            return

        match = MEDIA_ROUTE.match(parsed.path)
        if match:
            self._send_media(unquote(match.group(1)))
            return

        match = THUMB_ROUTE.match(parsed.path)
        if match:
            self._send_thumbnail(unquote(match.group(1)))
            return

        self._not_found()

    def _send_media(self, record_id: str) -> None:
        record = self.app.index.find_by_id(record_id)
        if record is None:
            raise NotFoundError("not found")

        stream = self.app.store.open(record.file_path, self.headers.get("Range"))
        with stream:
            self.send_response(stream.status)
            self.send_header("Content-Type", content_type_for(record.kind, record.file_path or "", record.mime))
            self.send_header("Accept-Ranges", "bytes")
            if stream.content_range:
                self.send_header("Content-Range", stream.content_range)
            self.send_header("Content-Length", str(stream.length))
            self._send_cors_headers()
            if not self._safe_end_headers() or self.command == "HEAD":
                return
            try:
                for chunk in stream.iter_chunks():
                    if not self._safe_write(chunk):
                        return
            except OSError as exc:
                # Headers are already out; all that is left is to drop the connection.
                logger.error("stream of %s aborted: %s", record_id, exc)
                self.close_connection = True

    def _send_thumbnail(self, record_id: str) -> None:
        record = self.app.index.find_by_id(record_id)
        if record is None:
            raise NotFoundError("not found")

        thumbnail = self.app.thumbnails.ensure(record)
        if thumbnail is None:
            body = placeholder_for(record)
            content_type = "image/svg+xml"
            cache_control = "public, max-age=120"
        else:
            body = thumbnail.read_bytes()
            content_type = "image/jpeg"
            cache_control = "public, max-age=31536000, immutable"

        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", content_type)
        self.send_header("Cache-Control", cache_control)
        self.send_header("Content-Length", str(len(body)))
        self._send_cors_headers()
        if not self._safe_end_headers() or self.command == "HEAD":
            return
        self._safe_write(body)

    def _handle_upload(self) -> None:
        config = self.app.config
        form = parse_upload(
            self.headers.get("Content-Type"),
            self.headers.get("Content-Length"),
            self.rfile,
            self.app.store,
            max_bytes=config.max_upload_bytes,
            max_files=None if config.strict_validation else 1,
        )
        result = self.app.pipeline.ingest(form)
        self._json_response(result.to_response())


def build_server(config: ServerConfig) -> MediaPinServer:
    return MediaPinServer((config.host, config.port), MediaApp(config))


def env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the geotagged media pin server")
    parser.add_argument("--host", default=DEFAULT_HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", DEFAULT_PORT)), help="Bind port")
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=Path(os.environ.get("PIN_MEDIA_DATA", DEFAULT_DATA_DIR)),
        help="Directory holding points.json and uploaded media",
    )
    parser.add_argument(
        "--strict-validation",
        action="store_true",
        default=env_flag("PIN_MEDIA_STRICT"),
        help="Reject uploads with missing or out-of-range coordinates instead of defaulting to 0",
    )
    parser.add_argument("--max-points", type=int, default=DEFAULT_MAX_POINTS, help="Cap on points per query")
    parser.add_argument("--max-upload-mb", type=int, default=DEFAULT_MAX_UPLOAD_MB, help="Upload size limit")
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    return ServerConfig(
        host=args.host,
        port=args.port,
        data_dir=args.data_dir,
        strict_validation=args.strict_validation,
        max_points=args.max_points,
        max_upload_bytes=args.max_upload_mb * 1024 * 1024,
    )


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    config = config_from_args(parse_args(argv))
    httpd = build_server(config)
    logger.info("Pin media server running at http://%s:%s", config.host, httpd.server_port)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        httpd.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
