from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authgate.service.passwords import password_problems


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after dropping invisible spoofing characters.

    Removes zero-width characters (U+200B, U+200C, U+200D, U+FEFF) and
    bidirectional overrides (U+202A-U+202E, U+2066-U+2069).
    """
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "token_invalid",
    "token_expired",
    "token_revoked",
    "account_disabled",
    "password_reset_required",
    "forbidden",
    "not_found",
    "conflict",
    "account_inconsistency",
    "rate_limited",
    "server_error",
    "migration_failed",
    "reset_email_failed",
    "dependency_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
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


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    problems = password_problems(value)
    if problems:
        raise ValueError(problems[0])
    return value


def _validate_display_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    if not 1 <= len(cleaned) <= 100:
        raise ValueError("display name must be between 1 and 100 characters")
    return cleaned


def _validate_photo_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not re.match(r"^https?://[^\s]+$", value):
        raise ValueError("photo URL must be an http(s) URL")
    if len(value) > 2048:
        raise ValueError("photo URL too long")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("display_name")
    @classmethod
    def _validate_display_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_display_name(value)

    @field_validator("photo_url")
    @classmethod
    def _validate_photo_url(cls, value: Optional[str]) -> Optional[str]:
        return _validate_photo_url(value)


class LoginRequest(BaseModel):
    email: str
    # Strength rules are not applied on login so legacy passwords still work
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class TokenVerifyRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = None
    photo_url: Optional[str] = None

    @field_validator("display_name")
    @classmethod
    def _validate_display_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_display_name(value)

    @field_validator("photo_url")
    @classmethod
    def _validate_photo_url(cls, value: Optional[str]) -> Optional[str]:
        return _validate_photo_url(value)


class DeleteAccountRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    oob_code: str = Field(..., min_length=1, max_length=512)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SchoolCreateRequest(BaseModel):
    name: str = Field(..., max_length=255)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("school name must not be empty")
        return cleaned


class ReconcileRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reconcile_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenBalanceAdjustRequest(BaseModel):
    delta: int = Field(..., ge=-1_000_000, le=1_000_000)
