from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from authgate.identity.base import ExternalUser, IdentityProvider
from authgate.identity.errors import ErrorKind, IdentityProviderError
from authgate.logging import get_logger, hash_email
from authgate.service.errors import (
    ConflictError,
    InconsistencyError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from authgate.storage.base import UserStore
from authgate.storage.models import AuthProvider, FederationStatus, User

logger = get_logger(__name__)


class ConflictType(str, Enum):
    LOCAL_USER = "local_user"
    HYBRID_USER = "hybrid_user"
    ORPHANED_ACCOUNT = "orphaned_account"
    INCONSISTENT_STATE = "inconsistent_state"
    EXTERNAL_USER = "external_user"
    UNEXPECTED_STATE = "unexpected_state"


_LOGIN_INSTEAD = (
    'This email is already registered. Please login instead. '
    'If you forgot your password, use "Forgot Password".'
)


@dataclass
class RegistrationCheck:
    allowed: bool
    conflict_type: Optional[ConflictType] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    actionable_message: Optional[str] = None
    support_code: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.conflict_type is not None:
            data["conflict_type"] = self.conflict_type.value
        return data

    def to_error(self) -> ServiceError:
        detail = {"conflict_type": self.conflict_type.value if self.conflict_type else None}
        if self.support_code:
            detail["support_code"] = self.support_code
            return InconsistencyError(self.actionable_message or "", detail=detail)
        return ConflictError(
            self.actionable_message or "",
            detail={**detail, "reason": self.error_code},
        )


@dataclass
class OrphanReport:
    orphaned_local: List[Dict[str, Any]] = field(default_factory=list)
    inconsistent_states: List[Dict[str, Any]] = field(default_factory=list)
    # Enumerating the provider is not supported; kept so reports share one shape
    orphaned_external: List[Dict[str, Any]] = field(default_factory=list)
    skipped: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RegistrationConflictResolver:
    """Classifies an email before registration against both identity stores."""

    def __init__(self, store: UserStore, identity: IdentityProvider) -> None:
        self.store = store
        self.identity = identity
        self.logger = logger

    async def check(self, email: str) -> RegistrationCheck:
        local = await self.store.get_user_by_email(email)
        external = await self.identity.get_user_by_email(email)
        result = self.classify(local, external)
        if result.allowed:
            self.logger.debug("registration_allowed", email_hash=hash_email(email))
        elif result.support_code:
            self.logger.error(
                "registration_account_inconsistency",
                email_hash=hash_email(email),
                conflict_type=result.conflict_type.value,
                local_external_id=local.external_auth_id if local else None,
                external_id=external.id if external else None,
            )
        else:
            self.logger.info(
                "registration_conflict",
                email_hash=hash_email(email),
                conflict_type=result.conflict_type.value,
            )
        return result

    async def ensure_allowed(self, email: str) -> None:
        result = await self.check(email)
        if not result.allowed:
            raise result.to_error()

    @staticmethod
    def classify(
        local: Optional[User], external: Optional[ExternalUser]
    ) -> RegistrationCheck:
        """Apply the conflict matrix; the first matching row wins."""
        if local is None and external is None:
            return RegistrationCheck(allowed=True)
        if local is not None and not local.external_auth_id and external is None:
            return RegistrationCheck(
                allowed=False,
                conflict_type=ConflictType.LOCAL_USER,
                error_code="EMAIL_EXISTS_LOCAL",
                message="Email already registered with local authentication",
                actionable_message=(
                    'This email is already registered. Please use "Forgot Password" '
                    "to set up your account, or login if you remember your password."
                ),
            )
        if local is not None and local.external_auth_id and external is not None:
            if local.external_auth_id == external.id:
                return RegistrationCheck(
                    allowed=False,
                    conflict_type=ConflictType.HYBRID_USER,
                    error_code="EMAIL_EXISTS_EXTERNAL",
                    message="Email already registered",
                    actionable_message=_LOGIN_INSTEAD,
                )
            return RegistrationCheck(
                allowed=False,
                conflict_type=ConflictType.ORPHANED_ACCOUNT,
                error_code="ACCOUNT_INCONSISTENCY",
                message="Account data inconsistency detected",
                actionable_message=(
                    "There is an issue with your account. "
                    "Please contact support with error code: ERR_ORPHAN_ACCOUNT"
                ),
                support_code="ERR_ORPHAN_ACCOUNT",
            )
        if local is not None and local.external_auth_id and external is None:
            return RegistrationCheck(
                allowed=False,
                conflict_type=ConflictType.INCONSISTENT_STATE,
                error_code="ACCOUNT_INCONSISTENCY",
                message="Account data inconsistency detected",
                actionable_message=(
                    "There is an issue with your account. "
                    "Please contact support with error code: ERR_INCONSISTENT_STATE"
                ),
                support_code="ERR_INCONSISTENT_STATE",
            )
        if local is None and external is not None:
            return RegistrationCheck(
                allowed=False,
                conflict_type=ConflictType.EXTERNAL_USER,
                error_code="EMAIL_EXISTS_EXTERNAL",
                message="Email already registered with the identity provider",
                actionable_message=_LOGIN_INSTEAD,
            )
        # Local row without external id while an external record exists
        return RegistrationCheck(
            allowed=False,
            conflict_type=ConflictType.UNEXPECTED_STATE,
            error_code="UNEXPECTED_STATE",
            message="Unexpected account state",
            actionable_message="An unexpected error occurred. Please contact support.",
            support_code="ERR_UNEXPECTED_STATE",
        )

    async def detect_orphaned_accounts(self) -> OrphanReport:
        """Sweep linked rows and report those whose external record is missing or moved."""
        report = OrphanReport()
        for user in await self.store.list_users_with_external_id():
            try:
                await self.identity.get_user(user.external_auth_id)
                continue
            except IdentityProviderError as exc:
                if exc.kind != ErrorKind.NOT_FOUND:
                    report.skipped += 1
                    self.logger.warning(
                        "orphan_scan_lookup_failed", user_id=user.id, kind=exc.kind.value
                    )
                    continue
            try:
                by_email = await self.identity.get_user_by_email(user.email)
            except IdentityProviderError as exc:
                report.skipped += 1
                self.logger.warning(
                    "orphan_scan_lookup_failed", user_id=user.id, kind=exc.kind.value
                )
                continue
            if by_email is not None and by_email.id != user.external_auth_id:
                report.inconsistent_states.append(
                    {
                        "user_id": user.id,
                        "email": user.email,
                        "stored_external_id": user.external_auth_id,
                        "actual_external_id": by_email.id,
                    }
                )
            else:
                report.orphaned_local.append(
                    {
                        "user_id": user.id,
                        "email": user.email,
                        "stored_external_id": user.external_auth_id,
                    }
                )
        self.logger.info(
            "orphan_scan_complete",
            orphaned_local=len(report.orphaned_local),
            inconsistent_states=len(report.inconsistent_states),
            skipped=report.skipped,
        )
        return report

    async def reconcile_orphaned_local_account(self, email: str) -> bool:
        """Drop a dangling external binding so the user can migrate again.

        Returns False, changing nothing, when the external record still exists.
        The binding is discarded rather than repaired; the user re-enters
        through the password-reset migration.
        """
        user = await self.store.get_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found")
        if not user.external_auth_id:
            raise ValidationError(
                "User is not linked to an external identity", detail={"user_id": user.id}
            )
        try:
            await self.identity.get_user(user.external_auth_id)
            self.logger.info("reconcile_external_present", user_id=user.id)
            return False
        except IdentityProviderError as exc:
            if exc.kind != ErrorKind.NOT_FOUND:
                raise
        await self.store.update_user(
            user.id,
            external_auth_id=None,
            auth_provider=AuthProvider.LOCAL,
            federation_status=FederationStatus.DISABLED,
        )
        self.logger.warning(
            "orphaned_account_reconciled",
            user_id=user.id,
            cleared_external_id=user.external_auth_id,
        )
        return True
