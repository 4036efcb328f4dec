"""Closed error vocabulary for the external identity provider.

Raw provider error strings are translated exactly once, here, so the
federation and login code only ever branches on ``ErrorKind``.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    RATE_LIMITED = "rate_limited"
    VALIDATION = "validation"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"


class IdentityProviderError(Exception):
    """A failed identity provider call, classified into an ``ErrorKind``."""

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        raw_code: Optional[str] = None,
    ) -> None:
        self.kind = ErrorKind(kind)
        self.raw_code = raw_code
        self.message = (
            message or _RAW_CODE_MESSAGES.get(raw_code or "") or _DEFAULT_MESSAGES[self.kind]
        )
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"IdentityProviderError(kind={self.kind.value!r}, raw_code={self.raw_code!r})"


_DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_CREDENTIALS: "Invalid credentials",
    ErrorKind.NOT_FOUND: "User not found",
    ErrorKind.ALREADY_EXISTS: "Email already exists",
    ErrorKind.TOKEN_INVALID: "Invalid token",
    ErrorKind.TOKEN_EXPIRED: "Token expired",
    ErrorKind.TOKEN_REVOKED: "Token has been revoked",
    ErrorKind.RATE_LIMITED: "Too many requests. Please try again later.",
    ErrorKind.VALIDATION: "Invalid request data",
    ErrorKind.DEPENDENCY_UNAVAILABLE: "Identity provider unavailable",
}

_RAW_CODE_MESSAGES: Dict[str, str] = {
    "WEAK_PASSWORD": "Password is too weak",
    "INVALID_EMAIL": "Invalid email format",
    "INVALID_OOB_CODE": "Invalid or expired reset code",
    "EXPIRED_OOB_CODE": "Invalid or expired reset code",
    "USER_DISABLED": "This account has been disabled",
}

# Identity Toolkit REST error messages and admin-style "auth/..." codes
PROVIDER_ERROR_KINDS: Dict[str, ErrorKind] = {
    # credentials
    "INVALID_PASSWORD": ErrorKind.INVALID_CREDENTIALS,
    "INVALID_LOGIN_CREDENTIALS": ErrorKind.INVALID_CREDENTIALS,
    "USER_DISABLED": ErrorKind.INVALID_CREDENTIALS,
    "auth/wrong-password": ErrorKind.INVALID_CREDENTIALS,
    "auth/invalid-credential": ErrorKind.INVALID_CREDENTIALS,
    "auth/user-disabled": ErrorKind.INVALID_CREDENTIALS,
    # unknown identity
    "EMAIL_NOT_FOUND": ErrorKind.NOT_FOUND,
    "USER_NOT_FOUND": ErrorKind.NOT_FOUND,
    "auth/user-not-found": ErrorKind.NOT_FOUND,
    # uniqueness
    "EMAIL_EXISTS": ErrorKind.ALREADY_EXISTS,
    "DUPLICATE_EMAIL": ErrorKind.ALREADY_EXISTS,
    "DUPLICATE_LOCAL_ID": ErrorKind.ALREADY_EXISTS,
    "auth/email-already-exists": ErrorKind.ALREADY_EXISTS,
    "auth/email-already-in-use": ErrorKind.ALREADY_EXISTS,
    "auth/uid-already-exists": ErrorKind.ALREADY_EXISTS,
    # tokens
    "TOKEN_EXPIRED": ErrorKind.TOKEN_EXPIRED,
    "auth/id-token-expired": ErrorKind.TOKEN_EXPIRED,
    "TOKEN_REVOKED": ErrorKind.TOKEN_REVOKED,
    "auth/id-token-revoked": ErrorKind.TOKEN_REVOKED,
    "INVALID_ID_TOKEN": ErrorKind.TOKEN_INVALID,
    "INVALID_REFRESH_TOKEN": ErrorKind.TOKEN_INVALID,
    "INVALID_GRANT_TYPE": ErrorKind.TOKEN_INVALID,
    "MISSING_REFRESH_TOKEN": ErrorKind.TOKEN_INVALID,
    "CREDENTIAL_TOO_OLD_LOGIN_AGAIN": ErrorKind.TOKEN_REVOKED,
    "INVALID_OOB_CODE": ErrorKind.TOKEN_INVALID,
    "EXPIRED_OOB_CODE": ErrorKind.TOKEN_EXPIRED,
    "auth/invalid-id-token": ErrorKind.TOKEN_INVALID,
    "auth/argument-error": ErrorKind.TOKEN_INVALID,
    "auth/invalid-refresh-token": ErrorKind.TOKEN_INVALID,
    # throttling
    "TOO_MANY_ATTEMPTS_TRY_LATER": ErrorKind.RATE_LIMITED,
    "QUOTA_EXCEEDED": ErrorKind.RATE_LIMITED,
    "auth/too-many-requests": ErrorKind.RATE_LIMITED,
    # input
    "WEAK_PASSWORD": ErrorKind.VALIDATION,
    "INVALID_EMAIL": ErrorKind.VALIDATION,
    "MISSING_PASSWORD": ErrorKind.VALIDATION,
    "MISSING_EMAIL": ErrorKind.VALIDATION,
    "auth/weak-password": ErrorKind.VALIDATION,
    "auth/invalid-email": ErrorKind.VALIDATION,
}


def translate_provider_error(
    raw_code: Optional[str],
    *,
    status_code: Optional[int] = None,
    message: Optional[str] = None,
) -> IdentityProviderError:
    """Map a raw provider error into an ``IdentityProviderError``.

    The REST API appends detail after the code (``"WEAK_PASSWORD : Password
    should be at least 6 characters"``); only the leading code is matched.
    Unknown codes fall back on the HTTP status: 429 is rate limiting, 400,
    404 and 422 are validation, anything else (including no response at
    all) means the provider is unavailable.
    """
    code = (raw_code or "").split(":", 1)[0].strip()
    kind = PROVIDER_ERROR_KINDS.get(code)
    if kind is None:
        if status_code == 429:
            kind = ErrorKind.RATE_LIMITED
        elif status_code in (400, 404, 422):
            kind = ErrorKind.VALIDATION
        else:
            kind = ErrorKind.DEPENDENCY_UNAVAILABLE
    return IdentityProviderError(kind, message, raw_code=code or None)


__all__ = [
    "ErrorKind",
    "IdentityProviderError",
    "PROVIDER_ERROR_KINDS",
    "translate_provider_error",
]
