from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from authgate.config import Settings
from authgate.identity.base import IdentityProvider, TokenBundle
from authgate.identity.errors import ErrorKind, IdentityProviderError
from authgate.logging import get_logger
from authgate.service.errors import (
    AuthenticationError,
    InconsistencyError,
    ServerError,
    ServiceError,
    TokenInvalidError,
    from_provider_error,
)
from authgate.service.federation import FederationService
from authgate.storage.base import UserStore
from authgate.storage.errors import ConstraintViolation, StorageUnavailable
from authgate.storage.models import User
from authgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_TOKEN_KINDS = (
    ErrorKind.TOKEN_INVALID,
    ErrorKind.TOKEN_EXPIRED,
    ErrorKind.TOKEN_REVOKED,
    ErrorKind.RATE_LIMITED,
    ErrorKind.DEPENDENCY_UNAVAILABLE,
)


def _token_error(exc: IdentityProviderError) -> ServiceError:
    if exc.kind in _TOKEN_KINDS:
        return from_provider_error(exc)
    # Disabled or deleted accounts surface as credential errors from the provider
    return TokenInvalidError("Invalid or expired token")


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class TokenVerification:
    user: User
    external_id: str
    email: Optional[str]
    email_verified: bool
    issued_at: datetime
    expires_at: datetime
    auth_time: Optional[datetime] = None
    cached: bool = False

    def cache_payload(self) -> Dict[str, Any]:
        return {
            "user_id": self.user.id,
            "external_id": self.external_id,
            "email": self.email,
            "email_verified": self.email_verified,
            "issued_at": _isoformat(self.issued_at),
            "expires_at": _isoformat(self.expires_at),
            "auth_time": _isoformat(self.auth_time),
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user.public_dict(),
            "external_id": self.external_id,
            "email_verified": self.email_verified,
            "issued_at": _isoformat(self.issued_at),
            "expires_at": _isoformat(self.expires_at),
            "auth_time": _isoformat(self.auth_time),
        }


class TokenVerificationService:
    """Verifies provider ID tokens and resolves them to local users.

    Successful verifications are memoized in the cache for at most
    ``token_cache_ttl_seconds`` and never past the token's own expiry.
    """

    def __init__(
        self,
        store: UserStore,
        identity: IdentityProvider,
        federation: FederationService,
        settings: Settings,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.federation = federation
        self.settings = settings
        self.cache = cache
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def verify(self, id_token: str) -> TokenVerification:
        if not id_token:
            raise TokenInvalidError("Missing token")
        cached = await self._from_cache(id_token)
        if cached is not None:
            return cached
        try:
            verified = await self.identity.verify_token(
                id_token, check_revoked=self.settings.check_revoked_tokens
            )
        except IdentityProviderError as exc:
            self.logger.info("token_rejected", kind=exc.kind.value, raw_code=exc.raw_code)
            raise _token_error(exc) from exc
        try:
            external = await self.identity.get_user(verified.external_id)
            user = await self.federation.get_or_create_user(external)
        except InconsistencyError:
            raise
        except (IdentityProviderError, ServiceError, ConstraintViolation, StorageUnavailable) as exc:
            self.logger.error(
                "token_user_sync_failed",
                external_id=verified.external_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Failed to sync user data") from exc
        self._ensure_active(user)
        result = TokenVerification(
            user=user,
            external_id=verified.external_id,
            email=verified.email,
            email_verified=verified.email_verified,
            issued_at=verified.issued_at,
            expires_at=verified.expires_at,
            auth_time=verified.auth_time,
        )
        await self._store_in_cache(id_token, result)
        return result

    def _ensure_active(self, user: User) -> None:
        if not user.is_active:
            self.logger.info("token_for_inactive_user", user_id=user.id)
            raise AuthenticationError(
                "This account has been disabled", error_code="account_disabled"
            )

    async def _from_cache(self, id_token: str) -> Optional[TokenVerification]:
        if self.cache is None:
            return None
        payload = await self.cache.get_verification(id_token)
        if not payload:
            return None
        try:
            expires_at = _parse_datetime(payload.get("expires_at"))
            issued_at = _parse_datetime(payload.get("issued_at"))
        except ValueError:
            expires_at = issued_at = None
        if expires_at is None or issued_at is None or expires_at <= self._now():
            await self.cache.invalidate_verification(id_token)
            return None
        user = await self.store.get_user(payload.get("user_id", ""))
        if user is None or not user.is_active:
            await self.cache.invalidate_verification(id_token)
            return None
        self.logger.debug("token_cache_hit", user_id=user.id)
        return TokenVerification(
            user=user,
            external_id=payload["external_id"],
            email=payload.get("email"),
            email_verified=bool(payload.get("email_verified")),
            issued_at=issued_at,
            expires_at=expires_at,
            auth_time=_parse_datetime(payload.get("auth_time")),
            cached=True,
        )

    async def _store_in_cache(self, id_token: str, result: TokenVerification) -> None:
        if self.cache is None:
            return
        remaining = int((result.expires_at - self._now()).total_seconds())
        ttl = min(self.settings.token_cache_ttl_seconds, remaining)
        await self.cache.set_verification(id_token, result.cache_payload(), ttl)

    async def refresh(self, refresh_token: str) -> TokenBundle:
        if not refresh_token:
            raise TokenInvalidError("Missing refresh token")
        try:
            return await self.identity.refresh_token(refresh_token)
        except IdentityProviderError as exc:
            self.logger.info("token_refresh_rejected", kind=exc.kind.value)
            raise _token_error(exc) from exc

    async def revoke(self, external_id: str, id_token: Optional[str] = None) -> None:
        """Revoke every refresh token of ``external_id`` and drop the cached verification."""
        try:
            await self.identity.revoke_tokens(external_id)
        except IdentityProviderError as exc:
            self.logger.warning("token_revoke_failed", external_id=external_id, kind=exc.kind.value)
            raise from_provider_error(exc) from exc
        finally:
            if id_token and self.cache is not None:
                await self.cache.invalidate_verification(id_token)
        self.logger.info("tokens_revoked", external_id=external_id)
