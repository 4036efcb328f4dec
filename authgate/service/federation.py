from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from authgate.config import Settings
from authgate.identity.base import ExternalUser, IdentityProvider
from authgate.identity.errors import IdentityProviderError
from authgate.logging import get_logger, hash_email
from authgate.service.errors import InconsistencyError, NotFoundError, ValidationError
from authgate.storage.base import UserStore
from authgate.storage.errors import ConstraintViolation, StorageUnavailable
from authgate.storage.models import AuthProvider, FederationStatus, User, UserType

logger = get_logger(__name__)

# Errors a single-row federation write can recover from by marking the row failed
_STORE_ERRORS = (ConstraintViolation, StorageUnavailable)


@dataclass
class RetryReport:
    success: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"success": self.success, "failed": self.failed}


class FederationService:
    """Keeps local user rows in step with identity provider records.

    Resolution order for an external record: linked row by external id, then
    an unlinked row with the same email (linked in place), then a new row. A
    row with the same email that is bound to a different identity is marked
    failed and reported as an inconsistency.
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

    @property
    def sync_threshold(self) -> timedelta:
        return timedelta(seconds=self.settings.sync_threshold_seconds)

    async def get_or_create_user(self, external: ExternalUser) -> User:
        user = await self.store.get_user_by_external_id(external.id)
        if user:
            return await self.sync_from_external(user, external)
        if external.email:
            user = await self.store.get_user_by_email(external.email)
            if user:
                return await self._link(user, external)
        return await self._create(external)

    async def get_user_by_external_id(self, external_id: str) -> User:
        """Resolve an external id to a local row, creating or linking it."""
        external = await self.identity.get_user(external_id)
        return await self.get_or_create_user(external)

    async def _link(self, user: User, external: ExternalUser) -> User:
        if user.external_auth_id and user.external_auth_id != external.id:
            # Same email bound to another identity; left for support, never relinked here
            self.logger.error(
                "user_link_conflict",
                user_id=user.id,
                stored_external_id=user.external_auth_id,
                external_id=external.id,
            )
            await self._mark_failed(user.id)
            raise InconsistencyError(
                "There is an issue with your account. "
                "Please contact support with error code: ERR_ORPHAN_ACCOUNT",
                detail={"support_code": "ERR_ORPHAN_ACCOUNT"},
            )
        auth_provider = (
            AuthProvider.HYBRID
            if user.auth_provider == AuthProvider.LOCAL
            else AuthProvider.EXTERNAL
        )
        try:
            linked = await self.store.update_user(
                user.id,
                external_auth_id=external.id,
                auth_provider=auth_provider,
                provider_data=external.to_provider_data(),
                federation_status=FederationStatus.ACTIVE,
                last_sync=self._now(),
            )
        except _STORE_ERRORS as exc:
            self.logger.error(
                "user_link_failed",
                user_id=user.id,
                external_id=external.id,
                error=str(exc),
            )
            await self._mark_failed(user.id)
            raise
        if linked is None:
            raise NotFoundError("User not found", detail={"user_id": user.id})
        self.logger.info(
            "user_linked",
            user_id=user.id,
            external_id=external.id,
            auth_provider=auth_provider.value,
        )
        return linked

    def _username_base(self, external: ExternalUser) -> str:
        base = external.display_name or (external.email or "").split("@")[0]
        return base.strip() or "user"

    async def _create(self, external: ExternalUser) -> User:
        if not external.email:
            raise ValidationError(
                "External account has no email address",
                detail={"external_id": external.id},
            )
        base = self._username_base(external)
        username = f"{base}_{external.id[:6]}"
        if await self.store.get_user_by_username(username) is not None:
            username = f"{base}_{external.id}"
        try:
            user = await self._insert(external, username)
        except ConstraintViolation as exc:
            # A concurrent request may have created or linked the same identity
            winner = await self.store.get_user_by_external_id(external.id)
            if winner:
                return winner
            if exc.field == "email":
                existing = await self.store.get_user_by_email(external.email)
                if existing:
                    return await self._link(existing, external)
            if exc.field != "username":
                raise
            user = await self._insert(external, f"{base}_{external.id}")
        self.logger.info(
            "user_created_from_external",
            user_id=user.id,
            external_id=external.id,
            email_hash=hash_email(external.email),
        )
        return user

    async def _insert(self, external: ExternalUser, username: str) -> User:
        return await self.store.create_user(
            email=external.email,
            username=username,
            user_type=UserType.USER,
            is_active=True,
            token_balance=self.settings.default_token_balance,
            external_auth_id=external.id,
            auth_provider=AuthProvider.EXTERNAL,
            provider_data=external.to_provider_data(),
            last_sync=self._now(),
            federation_status=FederationStatus.ACTIVE,
        )

    def is_fresh(self, user: User) -> bool:
        if user.last_sync is None:
            return False
        last_sync = user.last_sync
        if last_sync.tzinfo is None:
            last_sync = last_sync.replace(tzinfo=timezone.utc)
        return self._now() - last_sync < self.sync_threshold

    async def _apply_sync(
        self, user: User, external: ExternalUser, **extra: Any
    ) -> User:
        now = self._now()
        updates: Dict[str, Any] = {
            "provider_data": external.to_provider_data(),
            "last_sync": now,
            "last_login": now,
            **extra,
        }
        if external.display_name and external.display_name != user.username:
            updates["username"] = external.display_name
        try:
            updated = await self.store.update_user(user.id, **updates)
        except ConstraintViolation as exc:
            if exc.field != "username":
                raise
            # Display name already taken as someone else's username
            updates.pop("username")
            updated = await self.store.update_user(user.id, **updates)
        if updated is None:
            raise NotFoundError("User not found", detail={"user_id": user.id})
        return updated

    async def sync_from_external(
        self, user: User, external: ExternalUser, *, force: bool = False
    ) -> User:
        """Refresh the local snapshot of the external profile.

        Skipped while ``last_sync`` is within the freshness threshold unless
        ``force`` is set. A failed write marks the row ``failed`` and returns
        it unchanged.
        """
        if not force and self.is_fresh(user):
            return user
        try:
            synced = await self._apply_sync(user, external)
        except (*_STORE_ERRORS, NotFoundError) as exc:
            self.logger.warning(
                "user_sync_failed", user_id=user.id, external_id=external.id, error=str(exc)
            )
            await self._mark_failed(user.id)
            return user
        self.logger.debug("user_synced", user_id=user.id)
        return synced

    async def sync_to_external(self, user: User) -> User:
        """Push the local username and email to the identity provider."""
        if not user.external_auth_id:
            raise ValidationError(
                "User is not linked to an external identity", detail={"user_id": user.id}
            )
        external = await self.identity.update_user(
            user.external_auth_id, display_name=user.username, email=user.email
        )
        updated = await self.store.update_user(
            user.id, provider_data=external.to_provider_data(), last_sync=self._now()
        )
        self.logger.info("user_pushed_to_external", user_id=user.id)
        return updated or user

    async def delete_user(self, user_id: str) -> None:
        """Best-effort external delete, then a mandatory local soft delete."""
        user = await self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        if user.external_auth_id:
            try:
                await self.identity.delete_user(user.external_auth_id)
            except IdentityProviderError as exc:
                self.logger.warning(
                    "external_user_delete_failed",
                    user_id=user_id,
                    external_id=user.external_auth_id,
                    kind=exc.kind.value,
                )
        if not await self.store.soft_delete_user(user_id):
            raise NotFoundError("User not found", detail={"user_id": user_id})
        self.logger.info("user_soft_deleted", user_id=user_id)

    async def retry_failed_federations(self) -> RetryReport:
        report = RetryReport()
        failed_users = await self.store.list_users_with_federation_status(
            FederationStatus.FAILED
        )
        for user in failed_users:
            if not user.external_auth_id:
                # Needs an active re-link (login or password reset), not a sync
                report.failed += 1
                continue
            try:
                external = await self.identity.get_user(user.external_auth_id)
                await self._apply_sync(
                    user, external, federation_status=FederationStatus.ACTIVE
                )
                report.success += 1
            except (IdentityProviderError, NotFoundError, *_STORE_ERRORS) as exc:
                report.failed += 1
                self.logger.warning(
                    "federation_retry_failed", user_id=user.id, error=str(exc)
                )
        self.logger.info("federation_retry_complete", **report.as_dict())
        return report

    async def _mark_failed(self, user_id: str) -> Optional[User]:
        try:
            return await self.store.update_user(
                user_id, federation_status=FederationStatus.FAILED
            )
        except _STORE_ERRORS as exc:
            self.logger.error("federation_mark_failed_error", user_id=user_id, error=str(exc))
            return None
