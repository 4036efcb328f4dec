from __future__ import annotations

from typing import Optional

from authgate.identity.errors import ErrorKind, IdentityProviderError


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code returned in the error envelope:
    - validation_error (400)
    - invalid_credentials, token_invalid, token_expired, token_revoked (401)
    - forbidden (403)
    - not_found (404)
    - conflict, account_inconsistency (409)
    - rate_limited (429)
    - migration_failed, server_error (500)
    - dependency_unavailable (503)
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


class InvalidCredentialsError(AuthenticationError):
    """Wrong password or unknown account; always the same message."""
    error_code = "invalid_credentials"


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. registering an email that already exists (409)."""
    status_code = 409
    error_code = "conflict"


class InconsistencyError(ConflictError):
    """Local and external records disagree; needs support follow-up (409)."""
    error_code = "account_inconsistency"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class MigrationFailedError(ServerError):
    """Linking a local account to the identity provider failed; retry is safe."""
    error_code = "migration_failed"


class DependencyUnavailableError(ServiceError):
    """Storage or identity provider unreachable (503)."""
    status_code = 503
    error_code = "dependency_unavailable"


_TOKEN_MESSAGES = {
    ErrorKind.TOKEN_INVALID: "Invalid or expired token",
    ErrorKind.TOKEN_EXPIRED: "Token has expired",
    ErrorKind.TOKEN_REVOKED: "Token has been revoked",
}


def from_provider_error(exc: IdentityProviderError) -> ServiceError:
    """Translate an identity provider error kind into the matching service error."""
    kind = exc.kind
    if kind == ErrorKind.INVALID_CREDENTIALS:
        return InvalidCredentialsError("Invalid email or password")
    if kind == ErrorKind.NOT_FOUND:
        return NotFoundError("User not found")
    if kind == ErrorKind.ALREADY_EXISTS:
        return ConflictError("Email already exists")
    if kind == ErrorKind.TOKEN_INVALID:
        return TokenInvalidError(_TOKEN_MESSAGES[kind])
    if kind == ErrorKind.TOKEN_EXPIRED:
        return TokenExpiredError(_TOKEN_MESSAGES[kind])
    if kind == ErrorKind.TOKEN_REVOKED:
        return TokenRevokedError(_TOKEN_MESSAGES[kind])
    if kind == ErrorKind.RATE_LIMITED:
        return RateLimitedError("Too many requests. Please try again later.")
    if kind == ErrorKind.VALIDATION:
        return ValidationError(exc.message, detail={"provider_code": exc.raw_code})
    return DependencyUnavailableError("Identity provider unavailable")


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InconsistencyError",
    "RateLimitedError",
    "ServerError",
    "MigrationFailedError",
    "DependencyUnavailableError",
    "from_provider_error",
]
