"""Shared fixtures: temp data dirs, staged uploads and a live server."""

from __future__ import annotations

import http.client
import json
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import pytest

from pinmedia.forms import UploadedFile, UploadForm
from pinmedia.records import RecordIndex
from pinmedia.server import MediaPinServer, ServerConfig, build_server
from pinmedia.store import MediaStore


@pytest.fixture
def store(tmp_path: Path) -> MediaStore:
    return MediaStore(tmp_path)


@pytest.fixture
def index(tmp_path: Path) -> RecordIndex:
    return RecordIndex(tmp_path / "points.json")


@pytest.fixture
def make_form(store: MediaStore):
    """Build an UploadForm whose file is already staged in ``store``."""

    def factory(
        data: bytes | None = b"media-bytes",
        *,
        filename: str = "clip.mp4",
        content_type: str = "video/mp4",
        **fields: str,
    ) -> UploadForm:
        form = UploadForm(fields=dict(fields))
        if data is not None:
            path, handle = store.stage()
            with handle:
                handle.write(data)
            form.files.append(
                UploadedFile(
                    field_name="file",
                    filename=filename,
                    content_type=content_type,
                    path=path,
                    size=len(data),
                )
            )
        return form

    return factory


def multipart_body(
    fields: dict[str, str],
    files: list[tuple[str, str, str, bytes]],
) -> tuple[bytes, str]:
    """Encode ``fields`` and ``(field, filename, content_type, data)`` files."""
    boundary = f"----pinmedia{uuid.uuid4().hex}"
    chunks: list[bytes] = []
    for name, value in fields.items():
        chunks.append(
            f'--{boundary}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n{value}\r\n'.encode("utf-8")
        )
    for field_name, filename, content_type, data in files:
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{field_name}"; filename="{filename}"\r\n'
                f"Content-Type: {content_type}\r\n\r\n"
            ).encode("utf-8")
        )
        chunks.append(data)
        chunks.append(b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"


@dataclass
class Response:
    status: int
    headers: dict[str, str]
    body: bytes

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


class Client:
    def __init__(self, server: MediaPinServer) -> None:
        self.server = server

    @property
    def app(self):
        return self.server.app

    def request(
        self,
        method: str,
        path: str,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> Response:
        conn = http.client.HTTPConnection("127.0.0.1", self.server.server_port, timeout=10)
        try:
            conn.request(method, path, body=body, headers=headers or {})
            resp = conn.getresponse()
            data = resp.read()
            return Response(
                status=resp.status,
                headers={k.lower(): v for k, v in resp.getheaders()},
                body=data,
            )
        finally:
            conn.close()

    def get(self, path: str, headers: dict[str, str] | None = None) -> Response:
        return self.request("GET", path, headers=headers)

    def upload(
        self,
        data: bytes,
        *,
        filename: str = "clip.mp4",
        content_type: str = "video/mp4",
        field_name: str = "file",
        **fields: str,
    ) -> Response:
        body, ctype = multipart_body(fields, [(field_name, filename, content_type, data)])
        return self.request("POST", "/upload", body=body, headers={"Content-Type": ctype})


def _serve(config: ServerConfig) -> Iterator[Client]:
    httpd = build_server(config)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield Client(httpd)
    finally:
        httpd.shutdown()
        httpd.server_close()
        thread.join(timeout=5)


@pytest.fixture
def client(tmp_path: Path) -> Iterator[Client]:
    yield from _serve(ServerConfig(host="127.0.0.1", port=0, data_dir=tmp_path / "data"))


@pytest.fixture
def strict_client(tmp_path: Path) -> Iterator[Client]:
    yield from _serve(
        ServerConfig(host="127.0.0.1", port=0, data_dir=tmp_path / "data", strict_validation=True)
    )
