from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionauth.service.errors import FailureKind

MAX_USERNAME_LENGTH = 64
MAX_SECRET_LENGTH = 1024
MAX_FULL_NAME_LENGTH = 200


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after stripping invisible characters.

    This handles:
    - Combining diacritics
    - Compatibility characters
    - Zero-width and bidi override characters used for spoofing
    """
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
    }
    | {kind.value for kind in FailureKind}
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    """Usernames are 1-64 characters of letters, digits, underscore, dot or hyphen."""
    normalized = _normalize_unicode(value.strip())
    if not normalized:
        raise ValueError("username is required")
    if len(normalized) > MAX_USERNAME_LENGTH:
        raise ValueError(f"username must be at most {MAX_USERNAME_LENGTH} characters")
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError(
            "username must contain only letters, digits, underscores, dots and hyphens"
        )
    return normalized


def _require_secret(value: str) -> str:
    if not value:
        raise ValueError("password is required")
    if len(value) > MAX_SECRET_LENGTH:
        raise ValueError(f"password must be at most {MAX_SECRET_LENGTH} characters")
    return value


class LoginRequest(BaseModel):
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def _validate_login_username(cls, value: str) -> str:
        normalized = _normalize_unicode(value.strip())
        if not normalized:
            raise ValueError("username is required")
        if len(normalized) > MAX_USERNAME_LENGTH:
            raise ValueError(f"username must be at most {MAX_USERNAME_LENGTH} characters")
        return normalized

    @field_validator("password")
    @classmethod
    def _validate_login_password(cls, value: str) -> str:
        return _require_secret(value)


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str
    password: str
    email: str
    full_name: Optional[str] = Field(
        default=None, alias="fullName", max_length=MAX_FULL_NAME_LENGTH
    )

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _require_secret(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("full_name")
    @classmethod
    def _normalize_full_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = _normalize_unicode(value).strip()
        return cleaned or None


class ProfileResponse(BaseModel):
    """Public profile fields; never includes the secret hash."""

    model_config = ConfigDict(populate_by_name=True)

    username: str
    email: str
    full_name: Optional[str] = Field(default=None, alias="fullName")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


class MessageResponse(BaseModel):
    message: str
