from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from authgate.identity.base import ExternalUser, IdentityProvider, TokenBundle
from authgate.identity.errors import ErrorKind, IdentityProviderError
from authgate.logging import get_logger, hash_email
from authgate.service.errors import (
    AuthenticationError,
    InconsistencyError,
    InvalidCredentialsError,
    MigrationFailedError,
    from_provider_error,
)
from authgate.service.federation import FederationService
from authgate.service.passwords import verify_password
from authgate.storage.base import UserStore
from authgate.storage.errors import ConstraintViolation, StorageUnavailable
from authgate.storage.models import AuthProvider, FederationStatus, User

logger = get_logger(__name__)

INVALID_LOGIN_MESSAGE = "Invalid email or password"
NO_LOCAL_PASSWORD_MESSAGE = (
    'Password login is not available for this account. '
    'Use "Forgot Password" to set a new password.'
)
MIGRATION_FAILED_MESSAGE = "Account migration failed. Please try again or contact support."

# The provider answers this for both unknown email and wrong password when
# email enumeration protection is enabled
_AMBIGUOUS_CREDENTIAL_CODES = {"INVALID_LOGIN_CREDENTIALS"}


@dataclass
class LoginResult:
    user: User
    tokens: TokenBundle
    external_user: ExternalUser
    migrated: bool = False


class HybridLoginOrchestrator:
    """Password login against the identity provider with a local fallback.

    Accounts that only exist locally are verified against their stored hash
    and, once verified, migrated into the provider with the same password.
    Nothing is written anywhere before the password has been verified.
    """

    def __init__(
        self,
        store: UserStore,
        identity: IdentityProvider,
        federation: FederationService,
    ) -> None:
        self.store = store
        self.identity = identity
        self.federation = federation
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def login(self, email: str, password: str) -> LoginResult:
        try:
            tokens = await self.identity.sign_in(email, password)
        except IdentityProviderError as exc:
            if await self._is_unknown_external_identity(email, exc):
                return await self._local_login(email, password)
            if exc.kind == ErrorKind.INVALID_CREDENTIALS:
                self.logger.info(
                    "login_rejected_by_provider",
                    email_hash=hash_email(email),
                    raw_code=exc.raw_code,
                )
                raise InvalidCredentialsError(INVALID_LOGIN_MESSAGE) from exc
            raise from_provider_error(exc) from exc
        external = await self.identity.get_user(tokens.external_id)
        user = await self.federation.get_or_create_user(external)
        if not user.is_active:
            self.logger.info("login_inactive_account", user_id=user.id)
            raise AuthenticationError(
                "This account has been disabled", error_code="account_disabled"
            )
        self.logger.info("login_succeeded", user_id=user.id, path="external")
        return LoginResult(user=user, tokens=tokens, external_user=external)

    async def _is_unknown_external_identity(
        self, email: str, exc: IdentityProviderError
    ) -> bool:
        if exc.kind == ErrorKind.NOT_FOUND:
            return True
        if exc.kind == ErrorKind.INVALID_CREDENTIALS and exc.raw_code in _AMBIGUOUS_CREDENTIAL_CODES:
            try:
                return await self.identity.get_user_by_email(email) is None
            except IdentityProviderError as lookup_exc:
                raise from_provider_error(lookup_exc) from lookup_exc
        return False

    async def _local_login(self, email: str, password: str) -> LoginResult:
        user = await self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("login_unknown_email", email_hash=hash_email(email))
            raise InvalidCredentialsError(INVALID_LOGIN_MESSAGE)
        if not user.password_hash:
            self.logger.info("login_no_local_password", user_id=user.id)
            raise AuthenticationError(
                NO_LOCAL_PASSWORD_MESSAGE, error_code="password_reset_required"
            )
        if not verify_password(password, user.password_hash):
            self.logger.info("login_local_password_mismatch", user_id=user.id)
            raise InvalidCredentialsError(INVALID_LOGIN_MESSAGE)
        if user.external_auth_id:
            # Linked row whose external record has vanished; never re-linked inline
            self.logger.error(
                "login_inconsistent_state",
                user_id=user.id,
                external_id=user.external_auth_id,
            )
            raise InconsistencyError(
                "There is an issue with your account. "
                "Please contact support with error code: ERR_INCONSISTENT_STATE",
                detail={"support_code": "ERR_INCONSISTENT_STATE"},
            )
        return await self._migrate_on_login(user, email, password)

    async def _find_or_create_external(
        self, user: User, email: str, password: str
    ) -> ExternalUser:
        # Another request may have migrated this account already
        external = await self.identity.get_user_by_email(email)
        if external is not None:
            self.logger.info("migration_external_exists", user_id=user.id, external_id=external.id)
            return external
        try:
            return await self.identity.create_user(
                email=email,
                password=password,
                display_name=user.username,
                disabled=not user.is_active,
            )
        except IdentityProviderError as exc:
            if exc.kind != ErrorKind.ALREADY_EXISTS:
                raise
            external = await self.identity.get_user_by_email(email)
            if external is None:
                raise
            self.logger.info("migration_lost_create_race", user_id=user.id)
            return external

    async def _migrate_on_login(self, user: User, email: str, password: str) -> LoginResult:
        linked: Optional[User] = None
        try:
            external = await self._find_or_create_external(user, email, password)
            linked = await self.store.update_user(
                user.id,
                external_auth_id=external.id,
                auth_provider=AuthProvider.HYBRID,
                federation_status=FederationStatus.ACTIVE,
                provider_data=external.to_provider_data(),
                last_sync=self._now(),
            )
            if linked is None:
                raise StorageUnavailable("user row disappeared during migration")
            if not linked.is_active:
                self.logger.info("login_migrated_inactive_account", user_id=user.id)
                raise AuthenticationError(
                    "This account has been disabled", error_code="account_disabled"
                )
            tokens = await self.identity.sign_in(email, password)
        except (IdentityProviderError, ConstraintViolation, StorageUnavailable) as exc:
            self.logger.error(
                "login_migration_failed",
                user_id=user.id,
                linked=linked is not None,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._mark_failed(user.id)
            raise MigrationFailedError(MIGRATION_FAILED_MESSAGE) from exc
        self.logger.info(
            "login_succeeded", user_id=user.id, path="local", external_id=external.id
        )
        return LoginResult(user=linked, tokens=tokens, external_user=external, migrated=True)

    async def _mark_failed(self, user_id: str) -> None:
        try:
            await self.store.update_user(user_id, federation_status=FederationStatus.FAILED)
        except (ConstraintViolation, StorageUnavailable) as exc:
            self.logger.error("federation_mark_failed_error", user_id=user_id, error=str(exc))
