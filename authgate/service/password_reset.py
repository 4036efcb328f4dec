from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from authgate.config import Settings
from authgate.identity.base import ExternalUser, IdentityProvider
from authgate.identity.errors import ErrorKind, IdentityProviderError
from authgate.logging import get_logger, hash_email
from authgate.service.errors import ValidationError, from_provider_error
from authgate.service.passwords import (
    generate_temporary_password,
    hash_password,
    password_problems,
)
from authgate.storage.base import UserStore
from authgate.storage.errors import ConstraintViolation, StorageUnavailable
from authgate.storage.models import AuthProvider, FederationStatus, User

logger = get_logger(__name__)

RESET_SENT_MESSAGE = "If the email exists, a password reset link has been sent"
RESET_EMAIL_FAILED_MESSAGE = "Account migrated but failed to send reset email. Please try again."
RESET_MIGRATION_FAILED_MESSAGE = (
    "Failed to process password reset. Please try again or contact support."
)


@dataclass
class ResetOutcome:
    success: bool
    migrated: bool = False
    message: str = RESET_SENT_MESSAGE


@dataclass
class MigrationStats:
    total: int = 0
    local: int = 0
    external: int = 0
    hybrid: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ForgotPasswordMigrationService:
    """Password reset that doubles as the migration path for local accounts.

    Callers never learn whether an email is registered: unknown emails get
    the same outcome as a sent reset email.
    """

    def __init__(
        self, store: UserStore, identity: IdentityProvider, settings: Settings
    ) -> None:
        self.store = store
        self.identity = identity
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def request_reset(self, email: str) -> ResetOutcome:
        user = await self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return ResetOutcome(success=True)
        if user.external_auth_id:
            await self._send_for_linked_user(user)
            return ResetOutcome(success=True)
        return await self._migrate_and_send(user)

    async def _send_for_linked_user(self, user: User) -> None:
        try:
            await self.identity.send_password_reset_email(user.email)
        except IdentityProviderError as exc:
            if exc.kind == ErrorKind.NOT_FOUND:
                # Linked row without an external record; left for reconciliation
                self.logger.error(
                    "password_reset_external_missing",
                    user_id=user.id,
                    external_id=user.external_auth_id,
                )
                return
            self.logger.warning(
                "password_reset_email_failed", user_id=user.id, kind=exc.kind.value
            )
            raise from_provider_error(exc) from exc
        if user.federation_status == FederationStatus.SYNCING:
            await self.store.update_user(
                user.id, federation_status=FederationStatus.ACTIVE, last_sync=self._now()
            )
        self.logger.info("password_reset_email_sent", user_id=user.id)

    async def _find_or_create_external(self, user: User) -> ExternalUser:
        external = await self.identity.get_user_by_email(user.email)
        if external is not None:
            return external
        try:
            return await self.identity.create_user(
                email=user.email,
                password=generate_temporary_password(self.settings.temp_password_length),
                display_name=user.username,
                disabled=not user.is_active,
            )
        except IdentityProviderError as exc:
            if exc.kind != ErrorKind.ALREADY_EXISTS:
                raise
            external = await self.identity.get_user_by_email(user.email)
            if external is None:
                raise
            return external

    async def _migrate_and_send(self, user: User) -> ResetOutcome:
        try:
            external = await self._find_or_create_external(user)
            # Each store write commits on its own, so the link is durable
            # before the reset email goes out
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
        except (IdentityProviderError, ConstraintViolation, StorageUnavailable) as exc:
            self.logger.error(
                "password_reset_migration_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._set_status(user.id, FederationStatus.FAILED)
            return ResetOutcome(success=False, message=RESET_MIGRATION_FAILED_MESSAGE)

        self.logger.info(
            "password_reset_account_migrated", user_id=user.id, external_id=external.id
        )
        try:
            await self.identity.send_password_reset_email(user.email)
        except IdentityProviderError as exc:
            self.logger.error(
                "password_reset_email_failed_after_migration",
                user_id=user.id,
                kind=exc.kind.value,
            )
            await self._set_status(user.id, FederationStatus.SYNCING)
            return ResetOutcome(
                success=False, migrated=True, message=RESET_EMAIL_FAILED_MESSAGE
            )
        return ResetOutcome(success=True, migrated=True)

    async def _set_status(self, user_id: str, status: FederationStatus) -> None:
        try:
            await self.store.update_user(user_id, federation_status=status)
        except (ConstraintViolation, StorageUnavailable) as exc:
            self.logger.error(
                "federation_status_update_failed",
                user_id=user_id,
                status=status.value,
                error=str(exc),
            )

    async def confirm_reset(self, oob_code: str, new_password: str) -> Optional[User]:
        """Apply a reset code and bring the local row in line with it."""
        problems = password_problems(new_password)
        if problems:
            raise ValidationError(problems[0], detail={"problems": problems})
        try:
            email = await self.identity.reset_password(oob_code, new_password)
        except IdentityProviderError as exc:
            if exc.kind in (ErrorKind.TOKEN_INVALID, ErrorKind.TOKEN_EXPIRED):
                raise ValidationError("Invalid or expired reset code") from exc
            raise from_provider_error(exc) from exc
        user = await self.store.get_user_by_email(email) if email else None
        if user is None:
            self.logger.info("password_reset_confirmed", local_user=False)
            return None
        updates: Dict[str, Any] = {"password_hash": hash_password(new_password)}
        if user.federation_status == FederationStatus.SYNCING:
            updates.update(federation_status=FederationStatus.ACTIVE, last_sync=self._now())
        updated = await self.store.update_user(user.id, **updates)
        self.logger.info("password_reset_confirmed", user_id=user.id, local_user=True)
        return updated

    async def migration_stats(self) -> MigrationStats:
        counts = await self.store.count_users_by_auth_provider()
        failed = await self.store.count_users_with_federation_status(FederationStatus.FAILED)
        return MigrationStats(
            total=sum(counts.values()),
            local=counts.get(AuthProvider.LOCAL.value, 0),
            external=counts.get(AuthProvider.EXTERNAL.value, 0),
            hybrid=counts.get(AuthProvider.HYBRID.value, 0),
            failed=failed,
        )
