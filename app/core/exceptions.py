"""Custom exception types for domain and API layers."""
from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base app exception, rendered as a JSON error body by the API layer."""

    status_code: int = 500
    code: str = "SERVER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        body.update(self.details)
        return body


class ValidationError(AppError):
    """Missing or malformed user input."""

    status_code = 400
    code = "INVALID_INPUT"


class ConflictError(AppError):
    """Request conflicts with current state (duplicate subscription, illegal transition)."""

    status_code = 400
    code = "ALREADY_SUBSCRIBED"


class IntegrationError(AppError):
    """External integration call failure."""

    status_code = 502
    code = "INTEGRATION_ERROR"


class GatewayError(IntegrationError):
    """Payment gateway rejected or failed a call. The message is the gateway's own."""

    status_code = 400
    code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        gateway_status: int = 0,
        retry_count: int = 0,
    ):
        super().__init__(message, code=code)
        self.gateway_status = gateway_status
        self.retry_count = retry_count


class PersistenceError(AppError):
    """Local store write failed. Carries the gateway payment key when money already moved."""

    status_code = 500
    code = "DATABASE_ERROR"

    def __init__(self, message: str, *, payment_key: str | None = None):
        details = {"paymentKey": payment_key} if payment_key else None
        super().__init__(message, details=details)
        self.payment_key = payment_key


class StoreUnavailableError(AppError):
    """Local store could not be read before any money moved."""

    status_code = 500
    code = "SERVER_ERROR"


class AuthError(AppError):
    """Missing or invalid caller identity."""

    status_code = 401
    code = "AUTH_REQUIRED"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class RateLimitError(AppError):
    """Caller exceeded its request window."""

    status_code = 429
    code = "LIMIT_EXCEEDED"

    def __init__(self, message: str, *, limit: int, remaining: int, reset_in_ms: int):
        super().__init__(message)
        self.limit = limit
        self.remaining = remaining
        self.reset_in_ms = reset_in_ms

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Retry-After": str(max(1, -(-self.reset_in_ms // 1000))),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_in_ms),
        }
