from __future__ import annotations

from typing import Optional, Tuple

from authgate.config import Settings
from authgate.identity.base import ExternalUser, IdentityProvider, TokenBundle
from authgate.identity.errors import ErrorKind, IdentityProviderError
from authgate.logging import get_logger, hash_email
from authgate.service.errors import (
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
    from_provider_error,
)
from authgate.service.federation import FederationService
from authgate.service.login import HybridLoginOrchestrator, LoginResult
from authgate.service.password_reset import ForgotPasswordMigrationService, ResetOutcome
from authgate.service.passwords import password_problems
from authgate.service.registration import RegistrationCheck, RegistrationConflictResolver
from authgate.service.tokens import TokenVerification, TokenVerificationService
from authgate.storage.base import UserStore
from authgate.storage.models import User
from authgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthService:
    """Entry point for every account operation exposed over HTTP.

    Wires the federation, registration, login, password-reset and token
    services around one store and one identity provider.
    """

    def __init__(
        self,
        store: UserStore,
        identity: IdentityProvider,
        settings: Settings,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.settings = settings
        self.cache = cache
        self.logger = logger
        self.federation = FederationService(store, identity, settings)
        self.resolver = RegistrationConflictResolver(store, identity)
        self.login_flow = HybridLoginOrchestrator(store, identity, self.federation)
        self.password_reset = ForgotPasswordMigrationService(store, identity, settings)
        self.tokens = TokenVerificationService(
            store, identity, self.federation, settings, cache=cache
        )

    @staticmethod
    def _check_password(password: str) -> None:
        problems = password_problems(password)
        if problems:
            raise ValidationError(problems[0], detail={"problems": problems})

    async def register(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> Tuple[User, TokenBundle]:
        self._check_password(password)
        await self.resolver.ensure_allowed(email)
        try:
            tokens = await self.identity.sign_up(email, password)
        except IdentityProviderError as exc:
            self.logger.info(
                "registration_rejected_by_provider",
                email_hash=hash_email(email),
                kind=exc.kind.value,
            )
            raise from_provider_error(exc) from exc
        external = await self._apply_initial_profile(tokens.external_id, display_name, photo_url)
        user = await self.federation.get_or_create_user(external)
        self.logger.info("user_registered", user_id=user.id, external_id=external.id)
        return user, tokens

    async def _apply_initial_profile(
        self,
        external_id: str,
        display_name: Optional[str],
        photo_url: Optional[str],
    ) -> ExternalUser:
        fields = {
            key: value
            for key, value in (("display_name", display_name), ("photo_url", photo_url))
            if value
        }
        if fields:
            try:
                return await self.identity.update_user(external_id, **fields)
            except IdentityProviderError as exc:
                # The account exists already; the profile can be set later
                self.logger.warning(
                    "registration_profile_update_failed",
                    external_id=external_id,
                    kind=exc.kind.value,
                )
        try:
            return await self.identity.get_user(external_id)
        except IdentityProviderError as exc:
            raise from_provider_error(exc) from exc

    async def login(self, email: str, password: str) -> LoginResult:
        return await self.login_flow.login(email, password)

    async def authenticate(self, id_token: str) -> TokenVerification:
        return await self.tokens.verify(id_token)

    async def refresh(self, refresh_token: str) -> TokenBundle:
        return await self.tokens.refresh(refresh_token)

    async def logout(self, verification: TokenVerification, id_token: str) -> None:
        await self.tokens.revoke(verification.external_id, id_token)
        self.logger.info("user_logged_out", user_id=verification.user.id)

    async def update_profile(
        self,
        user: User,
        *,
        display_name: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> User:
        if not user.external_auth_id:
            raise ValidationError(
                "User is not linked to an external identity", detail={"user_id": user.id}
            )
        fields = {}
        if display_name is not None:
            fields["display_name"] = display_name
        if photo_url is not None:
            fields["photo_url"] = photo_url
        if not fields:
            raise ValidationError("No profile fields to update")
        try:
            external = await self.identity.update_user(user.external_auth_id, **fields)
        except IdentityProviderError as exc:
            raise from_provider_error(exc) from exc
        updated = await self.federation.sync_from_external(user, external, force=True)
        self.logger.info("profile_updated", user_id=user.id, fields=sorted(fields))
        return updated

    async def delete_account(
        self, user: User, password: str, *, id_token: Optional[str] = None
    ) -> None:
        """Delete the caller's account after re-checking their password."""
        try:
            await self.identity.sign_in(user.email, password)
        except IdentityProviderError as exc:
            if exc.kind in (ErrorKind.INVALID_CREDENTIALS, ErrorKind.NOT_FOUND):
                raise InvalidCredentialsError("Invalid password") from exc
            raise from_provider_error(exc) from exc
        await self.federation.delete_user(user.id)
        if id_token and self.cache is not None:
            await self.cache.invalidate_verification(id_token)

    async def forgot_password(self, email: str) -> ResetOutcome:
        return await self.password_reset.request_reset(email)

    async def reset_password(self, oob_code: str, new_password: str) -> Optional[User]:
        return await self.password_reset.confirm_reset(oob_code, new_password)

    async def check_email(self, email: str) -> RegistrationCheck:
        return await self.resolver.check(email)

    async def adjust_token_balance(self, user_id: str, delta: int) -> User:
        """Credit or debit a balance; debits never take it below zero."""
        if delta == 0:
            raise ValidationError("delta must be non-zero")
        user = await self.store.adjust_token_balance(user_id, delta)
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        self.logger.info(
            "token_balance_adjusted", user_id=user_id, delta=delta, balance=user.token_balance
        )
        return user

    async def push_profile(self, user_id: str) -> User:
        """Overwrite the provider's display name and email with the local row."""
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        try:
            return await self.federation.sync_to_external(user)
        except IdentityProviderError as exc:
            raise from_provider_error(exc) from exc
