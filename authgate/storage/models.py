from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthProvider(str, Enum):
    LOCAL = "local"
    EXTERNAL = "external"
    HYBRID = "hybrid"


class FederationStatus(str, Enum):
    ACTIVE = "active"
    SYNCING = "syncing"
    FAILED = "failed"
    DISABLED = "disabled"


class UserType(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"
    MODERATOR = "moderator"


@dataclass
class ProviderData:
    """Snapshot of the external profile taken at the last sync."""

    email_verified: Optional[bool] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    phone_number: Optional[str] = None
    disabled: Optional[bool] = None
    provider_id: Optional[str] = None
    created_at: Optional[str] = None
    last_sign_in_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["ProviderData"]:
        if not raw:
            return None
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in raw.items() if key in known})


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: Optional[str] = None
    user_type: UserType = UserType.USER
    is_active: bool = True
    token_balance: int = 0
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    external_auth_id: Optional[str] = None
    auth_provider: AuthProvider = AuthProvider.LOCAL
    provider_data: Optional[ProviderData] = None
    last_sync: Optional[datetime] = None
    federation_status: FederationStatus = FederationStatus.ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.user_type in (UserType.ADMIN, UserType.SUPERADMIN)

    def public_dict(self) -> Dict[str, Any]:
        """Profile fields safe to return to API clients."""
        provider_data = self.provider_data or ProviderData()
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "user_type": self.user_type.value,
            "is_active": self.is_active,
            "token_balance": self.token_balance,
            "external_auth_id": self.external_auth_id,
            "auth_provider": self.auth_provider.value,
            "federation_status": self.federation_status.value,
            "email_verified": bool(provider_data.email_verified),
            "photo_url": provider_data.photo_url,
            "last_login": self.last_login.isoformat() if self.last_login else None,
        }


@dataclass
class School:
    id: int
    name: str
    created_at: datetime = field(default_factory=_utcnow)
