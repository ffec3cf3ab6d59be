from __future__ import annotations

from typing import Any

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException


class APIError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}


class _KindError(APIError):
    status = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None, *, code: str | None = None) -> None:
        super().__init__(self.status, code or self.default_code, message, details)


class ValidationError(_KindError):
    status = 400
    default_code = "VALIDATION_ERROR"


class AuthError(_KindError):
    status = 401
    default_code = "UNAUTHENTICATED"


class ForbiddenError(_KindError):
    status = 403
    default_code = "FORBIDDEN"


class NotFoundError(_KindError):
    status = 404
    default_code = "NOT_FOUND"


class ConflictError(_KindError):
    status = 409
    default_code = "CONFLICT"


class GoneError(_KindError):
    status = 410
    default_code = "GONE"


class QuotaExceeded(_KindError):
    status = 413
    default_code = "QUOTA_EXCEEDED"


class PayloadTooLarge(_KindError):
    status = 413
    default_code = "PAYLOAD_TOO_LARGE"


class RateLimited(_KindError):
    status = 429
    default_code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int, *, code: str | None = None) -> None:
        super().__init__(message, {"retry_after": int(retry_after)}, code=code)
        self.retry_after = int(retry_after)


class IntegrityError(_KindError):
    """Blob ciphertext failed GCM tag verification or its plaintext hash differs."""

    default_code = "INTEGRITY_ERROR"


class FormatError(_KindError):
    """Blob does not start with the expected container magic."""

    default_code = "FORMAT_ERROR"


class InfraError(_KindError):
    default_code = "INFRA_ERROR"


class ServiceBusy(_KindError):
    status = 503
    default_code = "SERVICE_BUSY"


class DeadlineExceeded(ServiceBusy):
    default_code = "DEADLINE_EXCEEDED"


class ConfigError(RuntimeError):
    pass


def error_payload(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = dict(details or {})
    payload["error"] = message
    payload["code"] = code
    return payload


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(APIError)
    def handle_api_error(error: APIError):  # type: ignore[no-untyped-def]
        if error.status_code >= 500:
            app.logger.error("%s: %s", type(error).__name__, error.message)
        response = jsonify(error_payload(error.code, error.message, error.details))
        response.status_code = error.status_code
        if isinstance(error, RateLimited):
            response.headers["Retry-After"] = str(error.retry_after)
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):  # type: ignore[no-untyped-def]
        return (
            jsonify(error_payload("HTTP_ERROR", error.description or error.name, {"status": error.code})),
            error.code or 500,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):  # type: ignore[no-untyped-def]
        app.logger.exception("Unhandled exception", exc_info=error)
        return jsonify(error_payload("INTERNAL_ERROR", "An unexpected error occurred.")), 500
