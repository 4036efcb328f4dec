from __future__ import annotations

import secrets
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from authgate.identity.base import ExternalUser, TokenBundle, VerifiedToken
from authgate.identity.errors import ErrorKind, IdentityProviderError
from authgate.logging import get_logger

_ID_TOKEN_TTL_SECONDS = 3600


@dataclass
class _IssuedToken:
    external_id: str
    issued_at: datetime
    expires_at: datetime


class InMemoryIdentityProvider:
    """Process-local identity provider for tests and local development.

    Behaves like the Identity Toolkit for the calls the gateway makes:
    emails are matched case-insensitively, passwords shorter than six
    characters are rejected, revoked sessions fail ``check_revoked``
    verification. ``fail_next`` queues an error for the next call of an
    operation.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, ExternalUser] = {}
        self.passwords: Dict[str, str] = {}
        self.id_tokens: Dict[str, _IssuedToken] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.reset_codes: Dict[str, str] = {}
        self.sent_reset_emails: List[str] = []
        self._failures: Dict[str, List[IdentityProviderError]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def fail_next(self, operation: str, kind: ErrorKind, message: Optional[str] = None) -> None:
        """Make the next call to ``operation`` raise an error of ``kind``."""
        with self._lock:
            self._failures.setdefault(operation, []).append(
                IdentityProviderError(kind, message, raw_code="INJECTED")
            )

    def _maybe_fail(self, operation: str) -> None:
        with self._lock:
            queued = self._failures.get(operation)
            if queued:
                raise queued.pop(0)

    def _find_by_email(self, email: str) -> Optional[ExternalUser]:
        lowered = email.strip().lower()
        return next(
            (u for u in self.users.values() if (u.email or "").lower() == lowered),
            None,
        )

    def _issue_tokens(self, user: ExternalUser) -> TokenBundle:
        now = self._now()
        id_token = f"idt_{secrets.token_urlsafe(24)}"
        refresh_token = f"rft_{secrets.token_urlsafe(24)}"
        self.id_tokens[id_token] = _IssuedToken(
            external_id=user.id,
            issued_at=now,
            expires_at=now + timedelta(seconds=_ID_TOKEN_TTL_SECONDS),
        )
        self.refresh_tokens[refresh_token] = user.id
        user.last_sign_in_at = now.isoformat()
        return TokenBundle(
            id_token=id_token,
            refresh_token=refresh_token,
            expires_in=_ID_TOKEN_TTL_SECONDS,
            external_id=user.id,
            email=user.email,
        )

    def _create(
        self,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        disabled: bool = False,
    ) -> ExternalUser:
        if not email or "@" not in email:
            raise IdentityProviderError(ErrorKind.VALIDATION, raw_code="INVALID_EMAIL")
        if len(password or "") < 6:
            raise IdentityProviderError(ErrorKind.VALIDATION, raw_code="WEAK_PASSWORD")
        if self._find_by_email(email):
            raise IdentityProviderError(ErrorKind.ALREADY_EXISTS, raw_code="EMAIL_EXISTS")
        user = ExternalUser(
            id=uuid.uuid4().hex[:28],
            email=email.strip().lower(),
            display_name=display_name,
            disabled=disabled,
            created_at=self._now().isoformat(),
        )
        self.users[user.id] = user
        self.passwords[user.id] = password
        return user

    async def sign_up(self, email: str, password: str) -> TokenBundle:
        self._maybe_fail("sign_up")
        with self._lock:
            user = self._create(email, password)
            return self._issue_tokens(user)

    async def sign_in(self, email: str, password: str) -> TokenBundle:
        self._maybe_fail("sign_in")
        with self._lock:
            user = self._find_by_email(email)
            if user is None:
                raise IdentityProviderError(ErrorKind.NOT_FOUND, raw_code="EMAIL_NOT_FOUND")
            if self.passwords.get(user.id) != password:
                raise IdentityProviderError(
                    ErrorKind.INVALID_CREDENTIALS, raw_code="INVALID_PASSWORD"
                )
            if user.disabled:
                raise IdentityProviderError(
                    ErrorKind.INVALID_CREDENTIALS, raw_code="USER_DISABLED"
                )
            return self._issue_tokens(user)

    async def refresh_token(self, refresh_token: str) -> TokenBundle:
        self._maybe_fail("refresh_token")
        with self._lock:
            external_id = self.refresh_tokens.get(refresh_token)
            user = self.users.get(external_id) if external_id else None
            if user is None:
                raise IdentityProviderError(
                    ErrorKind.TOKEN_INVALID, raw_code="INVALID_REFRESH_TOKEN"
                )
            if user.disabled:
                raise IdentityProviderError(
                    ErrorKind.INVALID_CREDENTIALS, raw_code="USER_DISABLED"
                )
            del self.refresh_tokens[refresh_token]
            return self._issue_tokens(user)

    async def verify_token(
        self, id_token: str, *, check_revoked: bool = False
    ) -> VerifiedToken:
        self._maybe_fail("verify_token")
        with self._lock:
            issued = self.id_tokens.get(id_token)
            if issued is None:
                raise IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="INVALID_ID_TOKEN")
            if issued.expires_at <= self._now():
                raise IdentityProviderError(ErrorKind.TOKEN_EXPIRED, raw_code="TOKEN_EXPIRED")
            user = self.users.get(issued.external_id)
            if user is None:
                raise IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="USER_NOT_FOUND")
            if check_revoked:
                if user.disabled:
                    raise IdentityProviderError(
                        ErrorKind.TOKEN_REVOKED, raw_code="USER_DISABLED"
                    )
                if user.tokens_valid_after and issued.issued_at < user.tokens_valid_after:
                    raise IdentityProviderError(
                        ErrorKind.TOKEN_REVOKED, raw_code="TOKEN_REVOKED"
                    )
            return VerifiedToken(
                external_id=user.id,
                email=user.email,
                email_verified=user.email_verified,
                issued_at=issued.issued_at,
                expires_at=issued.expires_at,
                auth_time=issued.issued_at,
                claims={"sub": user.id, "email": user.email},
            )

    async def get_user(self, external_id: str) -> ExternalUser:
        self._maybe_fail("get_user")
        with self._lock:
            user = self.users.get(external_id)
            if user is None:
                raise IdentityProviderError(ErrorKind.NOT_FOUND, raw_code="USER_NOT_FOUND")
            return replace(user)

    async def get_user_by_email(self, email: str) -> Optional[ExternalUser]:
        self._maybe_fail("get_user_by_email")
        with self._lock:
            user = self._find_by_email(email)
            return replace(user) if user else None

    async def create_user(
        self,
        *,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        disabled: bool = False,
    ) -> ExternalUser:
        self._maybe_fail("create_user")
        with self._lock:
            return replace(self._create(email, password, display_name, disabled))

    async def update_user(self, external_id: str, **fields: Any) -> ExternalUser:
        self._maybe_fail("update_user")
        with self._lock:
            user = self.users.get(external_id)
            if user is None:
                raise IdentityProviderError(ErrorKind.NOT_FOUND, raw_code="USER_NOT_FOUND")
            password = fields.pop("password", None)
            if password is not None:
                if len(password) < 6:
                    raise IdentityProviderError(ErrorKind.VALIDATION, raw_code="WEAK_PASSWORD")
                self.passwords[external_id] = password
            email = fields.get("email")
            if email is not None:
                other = self._find_by_email(email)
                if other is not None and other.id != external_id:
                    raise IdentityProviderError(
                        ErrorKind.ALREADY_EXISTS, raw_code="EMAIL_EXISTS"
                    )
                fields["email"] = email.strip().lower()
            for key, value in fields.items():
                if not hasattr(user, key) or key == "id":
                    raise IdentityProviderError(ErrorKind.VALIDATION, raw_code="INVALID_FIELD")
                setattr(user, key, value)
            return replace(user)

    async def delete_user(self, external_id: str) -> None:
        self._maybe_fail("delete_user")
        with self._lock:
            if self.users.pop(external_id, None) is None:
                raise IdentityProviderError(ErrorKind.NOT_FOUND, raw_code="USER_NOT_FOUND")
            self.passwords.pop(external_id, None)
            for token in [t for t, uid in self.refresh_tokens.items() if uid == external_id]:
                del self.refresh_tokens[token]

    async def revoke_tokens(self, external_id: str) -> None:
        self._maybe_fail("revoke_tokens")
        with self._lock:
            user = self.users.get(external_id)
            if user is None:
                raise IdentityProviderError(ErrorKind.NOT_FOUND, raw_code="USER_NOT_FOUND")
            user.tokens_valid_after = self._now()
            for token in [t for t, uid in self.refresh_tokens.items() if uid == external_id]:
                del self.refresh_tokens[token]

    async def send_password_reset_email(self, email: str) -> None:
        self._maybe_fail("send_password_reset_email")
        with self._lock:
            user = self._find_by_email(email)
            if user is None:
                raise IdentityProviderError(ErrorKind.NOT_FOUND, raw_code="EMAIL_NOT_FOUND")
            code = secrets.token_urlsafe(16)
            self.reset_codes[code] = user.id
            self.sent_reset_emails.append(user.email or email)
        self.logger.info("reset_email_recorded", external_id=user.id)

    async def reset_password(self, oob_code: str, new_password: str) -> str:
        self._maybe_fail("reset_password")
        with self._lock:
            external_id = self.reset_codes.pop(oob_code, None)
            user = self.users.get(external_id) if external_id else None
            if user is None:
                raise IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="INVALID_OOB_CODE")
            if len(new_password or "") < 6:
                raise IdentityProviderError(ErrorKind.VALIDATION, raw_code="WEAK_PASSWORD")
            self.passwords[external_id] = new_password
            return user.email or ""

    async def close(self) -> None:
        return None
