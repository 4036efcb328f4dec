from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from authgate.storage.models import ProviderData


@dataclass
class ExternalUser:
    """A user record as held by the external identity provider."""

    id: str
    email: Optional[str]
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    phone_number: Optional[str] = None
    email_verified: bool = False
    disabled: bool = False
    provider_id: str = "password"
    created_at: Optional[str] = None
    last_sign_in_at: Optional[str] = None
    tokens_valid_after: Optional[datetime] = None

    def to_provider_data(self) -> ProviderData:
        return ProviderData(
            email_verified=self.email_verified,
            display_name=self.display_name,
            photo_url=self.photo_url,
            phone_number=self.phone_number,
            disabled=self.disabled,
            provider_id=self.provider_id,
            created_at=self.created_at,
            last_sign_in_at=self.last_sign_in_at,
        )


@dataclass
class TokenBundle:
    id_token: str
    refresh_token: str
    expires_in: int
    external_id: Optional[str] = None
    email: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id_token": self.id_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
        }


@dataclass
class VerifiedToken:
    external_id: str
    email: Optional[str]
    email_verified: bool
    issued_at: datetime
    expires_at: datetime
    auth_time: Optional[datetime] = None
    claims: Dict[str, Any] = field(default_factory=dict)


class IdentityProvider(Protocol):
    """Capabilities consumed from the external identity provider.

    Every failure is raised as ``IdentityProviderError`` carrying an
    ``ErrorKind``; ``get_user_by_email`` returns ``None`` instead of raising
    for an unknown email.
    """

    async def sign_up(self, email: str, password: str) -> TokenBundle: ...

    async def sign_in(self, email: str, password: str) -> TokenBundle: ...

    async def refresh_token(self, refresh_token: str) -> TokenBundle: ...

    async def verify_token(
        self, id_token: str, *, check_revoked: bool = False
    ) -> VerifiedToken: ...

    async def get_user(self, external_id: str) -> ExternalUser: ...

    async def get_user_by_email(self, email: str) -> Optional[ExternalUser]: ...

    async def create_user(
        self,
        *,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        disabled: bool = False,
    ) -> ExternalUser: ...

    async def update_user(self, external_id: str, **fields: Any) -> ExternalUser: ...

    async def delete_user(self, external_id: str) -> None: ...

    async def revoke_tokens(self, external_id: str) -> None: ...

    async def send_password_reset_email(self, email: str) -> None: ...

    async def reset_password(self, oob_code: str, new_password: str) -> str: ...

    async def close(self) -> None: ...
