from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    invalid_image = "invalid_image"
    invalid_input = "invalid_input"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    malformed_multipart = "malformed_multipart"
    unauthorized = "unauthorized"
    service_not_ready = "service_not_ready"
    internal_error = "internal_error"


# (http status, default message) per code
_CODE_TABLE: Final[dict[ErrorCode, tuple[int, str]]] = {
    ErrorCode.invalid_image: (status.HTTP_400_BAD_REQUEST, "Failed to decode image."),
    ErrorCode.invalid_input: (status.HTTP_400_BAD_REQUEST, "Invalid pipeline input."),
    ErrorCode.unsupported_media_type: (
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
        "Unsupported media type.",
    ),
    ErrorCode.bad_dimensions: (
        status.HTTP_400_BAD_REQUEST,
        "Image dimensions exceed allowed limits.",
    ),
    ErrorCode.too_large: (status.HTTP_413_CONTENT_TOO_LARGE, "File exceeds size limit."),
    ErrorCode.malformed_multipart: (status.HTTP_400_BAD_REQUEST, "Malformed multipart body."),
    ErrorCode.unauthorized: (status.HTTP_401_UNAUTHORIZED, "Unauthorized."),
    ErrorCode.service_not_ready: (
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Classifier not loaded. Seed or upload a model.",
    ),
    ErrorCode.internal_error: (status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error."),
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message, "request_id": self.request_id}


class AppError(Exception):
    """Error with a stable code and the HTTP status the API answers with."""

    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message

    @classmethod
    def of(cls, code: ErrorCode, message: str | None = None) -> AppError:
        return cls(code, status_for(code), message or default_message(code))


class _CodedError(AppError):
    code_for_class: ErrorCode = ErrorCode.internal_error

    def __init__(self, message: str | None = None) -> None:
        code = self.code_for_class
        super().__init__(code, status_for(code), message or default_message(code))


class InvalidImageError(_CodedError):
    """Source image cannot be decoded into an RGB bitmap."""

    code_for_class = ErrorCode.invalid_image


class InvalidInputError(_CodedError):
    """A stage received input that violates its contract (shape, empty vector)."""

    code_for_class = ErrorCode.invalid_input


class ClassifierNotReadyError(_CodedError):
    code_for_class = ErrorCode.service_not_ready


def status_for(code: ErrorCode) -> int:
    entry = _CODE_TABLE.get(code)
    return entry[0] if entry is not None else status.HTTP_500_INTERNAL_SERVER_ERROR


def default_message(code: ErrorCode) -> str:
    entry = _CODE_TABLE.get(code)
    return entry[1] if entry is not None else ""


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else default_message(code)
    return ErrorResponse(code=code, message=msg, request_id=request_id)
