from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class FailureKind(str, Enum):
    """Closed set of authentication outcomes; values double as stable error codes."""

    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMITED = "rate_limited"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    UNAUTHENTICATED = "unauthenticated"
    DUPLICATE_RESOURCE = "duplicate_resource"
    VALIDATION_FAILED = "validation_error"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a default ``error_code``:
    - unauthorized (401)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Every FailureKind must appear here; a missing entry is a KeyError at the boundary.
_FAILURE_ERRORS: dict[FailureKind, type[ServiceError]] = {
    FailureKind.INVALID_CREDENTIALS: AuthenticationError,
    FailureKind.RATE_LIMITED: RateLimitedError,
    FailureKind.TOKEN_EXPIRED: AuthenticationError,
    FailureKind.TOKEN_INVALID: AuthenticationError,
    FailureKind.UNAUTHENTICATED: AuthenticationError,
    FailureKind.DUPLICATE_RESOURCE: ValidationError,
    FailureKind.VALIDATION_FAILED: ValidationError,
}


@dataclass(frozen=True)
class AuthFailure:
    """A typed failure returned (not raised) by the auth components."""

    kind: FailureKind
    message: str
    retry_after_seconds: Optional[int] = None
    remaining_attempts: Optional[int] = None
    field: Optional[str] = None
    field_errors: Optional[dict[str, str]] = None

    @classmethod
    def invalid_credentials(cls, remaining_attempts: Optional[int] = None) -> "AuthFailure":
        return cls(
            FailureKind.INVALID_CREDENTIALS,
            "Invalid credentials",
            remaining_attempts=remaining_attempts,
        )

    @classmethod
    def rate_limited(cls, retry_after_seconds: int) -> "AuthFailure":
        minutes = max(1, -(-retry_after_seconds // 60))
        return cls(
            FailureKind.RATE_LIMITED,
            f"Account temporarily locked. Try again in {minutes} minutes.",
            retry_after_seconds=retry_after_seconds,
        )

    @classmethod
    def token_expired(cls) -> "AuthFailure":
        return cls(FailureKind.TOKEN_EXPIRED, "Token has expired")

    @classmethod
    def token_invalid(cls, message: str = "Invalid token") -> "AuthFailure":
        return cls(FailureKind.TOKEN_INVALID, message)

    @classmethod
    def unauthenticated(cls, message: str = "Not authenticated") -> "AuthFailure":
        return cls(FailureKind.UNAUTHENTICATED, message)

    @classmethod
    def duplicate(cls, field: str) -> "AuthFailure":
        return cls(
            FailureKind.DUPLICATE_RESOURCE,
            f"User already exists with {field}",
            field=field,
        )

    @classmethod
    def validation_failed(cls, field_errors: dict[str, str]) -> "AuthFailure":
        return cls(
            FailureKind.VALIDATION_FAILED,
            "Validation failed",
            field_errors=dict(field_errors),
        )

    def details(self) -> dict[str, Any]:
        """Client-facing detail fields; never includes internal exception text."""
        details: dict[str, Any] = dict(self.field_errors or {})
        if self.remaining_attempts is not None:
            details["remainingAttempts"] = self.remaining_attempts
        if self.retry_after_seconds is not None:
            details["retryAfterSeconds"] = self.retry_after_seconds
        if self.field is not None:
            details["field"] = self.field
        return details

    def to_service_error(self) -> ServiceError:
        error_cls = _FAILURE_ERRORS[self.kind]
        return error_cls(self.message, detail=self.details(), error_code=self.kind.value)


__all__ = [
    "AuthFailure",
    "FailureKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "RateLimitedError",
    "ServerError",
]
