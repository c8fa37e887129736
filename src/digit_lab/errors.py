from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    invalid_image = "invalid_image"
    invalid_argument = "invalid_argument"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    malformed_multipart = "malformed_multipart"
    timeout = "timeout"
    internal_error = "internal_error"
    unauthorized = "unauthorized"
    service_not_ready = "service_not_ready"
    llm_not_configured = "llm_not_configured"
    llm_failed = "llm_failed"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.invalid_image: "Failed to decode image.",
    ErrorCode.invalid_argument: "Invalid argument.",
    ErrorCode.unsupported_media_type: "Unsupported media type.",
    ErrorCode.bad_dimensions: "Image dimensions exceed allowed limits.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.malformed_multipart: "Malformed multipart body.",
    ErrorCode.timeout: "Request timed out.",
    ErrorCode.internal_error: "Internal server error.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.service_not_ready: "Model not loaded.",
    ErrorCode.llm_not_configured: "Language model is not configured.",
    ErrorCode.llm_failed: "Language model request failed.",
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code.value,
            "message": self.message,
            "request_id": self.request_id,
        }


class AppError(Exception):
    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message


class InvalidImageError(AppError):
    """Input bytes are empty, missing or cannot be decoded as an image."""

    def __init__(self, message: str | None = None) -> None:
        code = ErrorCode.invalid_image
        super().__init__(code, status_for(code), message or _DEFAULT_MESSAGE[code])


class InvalidArgumentError(AppError):
    """A caller-supplied value is out of range (empty score vector, bad K, ...)."""

    def __init__(self, message: str | None = None) -> None:
        code = ErrorCode.invalid_argument
        super().__init__(code, status_for(code), message or _DEFAULT_MESSAGE[code])


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def app_error(code: ErrorCode, message: str | None = None) -> AppError:
    return AppError(code, status_for(code), message or _DEFAULT_MESSAGE.get(code, ""))


def status_for(code: ErrorCode) -> int:
    if code is ErrorCode.invalid_image:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.invalid_argument:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.unsupported_media_type:
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if code is ErrorCode.bad_dimensions:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.too_large:
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if code is ErrorCode.malformed_multipart:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.timeout:
        return status.HTTP_504_GATEWAY_TIMEOUT
    if code is ErrorCode.unauthorized:
        return status.HTTP_401_UNAUTHORIZED
    if code is ErrorCode.service_not_ready:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code is ErrorCode.llm_not_configured:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code is ErrorCode.llm_failed:
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR
