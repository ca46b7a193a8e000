"""Error kinds raised by the ingestion, storage and query layers."""

from __future__ import annotations

from http import HTTPStatus


class MediaError(Exception):
    status = HTTPStatus.INTERNAL_SERVER_ERROR
    public_message = "internal error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)

    @property
    def client_message(self) -> str:
        # Only client-side errors echo their message back.
        if self.status < 500:
            return str(self)
        return self.public_message


class ValidationError(MediaError):
    status = HTTPStatus.BAD_REQUEST
    public_message = "invalid request"


class LengthRequired(ValidationError):
    status = HTTPStatus.LENGTH_REQUIRED
    public_message = "Content-Length is required"


class PayloadTooLarge(ValidationError):
    status = HTTPStatus.REQUEST_ENTITY_TOO_LARGE
    public_message = "upload too large"


class NotFoundError(MediaError):
    status = HTTPStatus.NOT_FOUND
    public_message = "not found"


class IOFailure(MediaError):
    pass
