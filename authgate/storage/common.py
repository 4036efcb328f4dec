"""Common storage utilities shared between memory and postgres implementations.

Both backends accept the same partial-update vocabulary and normalise school
names the same way, so the rules live here.
"""

from __future__ import annotations

from typing import Any, Dict

from authgate.storage.models import AuthProvider, FederationStatus, ProviderData, UserType

# Columns a caller may change through ``update_user``. id, created_at and
# updated_at are managed by the store itself.
UPDATABLE_USER_FIELDS = frozenset(
    {
        "email",
        "username",
        "password_hash",
        "user_type",
        "is_active",
        "token_balance",
        "last_login",
        "external_auth_id",
        "auth_provider",
        "provider_data",
        "last_sync",
        "federation_status",
    }
)


def validate_user_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Reject unknown columns and coerce enum values.

    Raises:
        ValueError: if a field is not updatable
    """
    unknown = set(updates) - UPDATABLE_USER_FIELDS
    if unknown:
        raise ValueError(f"unknown user fields: {', '.join(sorted(unknown))}")
    normalized = dict(updates)
    if "auth_provider" in normalized:
        normalized["auth_provider"] = AuthProvider(normalized["auth_provider"])
    if "federation_status" in normalized:
        normalized["federation_status"] = FederationStatus(normalized["federation_status"])
    if "user_type" in normalized:
        normalized["user_type"] = UserType(normalized["user_type"])
    provider_data = normalized.get("provider_data")
    if isinstance(provider_data, dict):
        normalized["provider_data"] = ProviderData.from_dict(provider_data)
    if "token_balance" in normalized and normalized["token_balance"] < 0:
        raise ValueError("token_balance cannot be negative")
    return normalized


def normalize_school_name(name: str) -> str:
    """Trim and upper-case a school name; empty names are rejected."""

    normalized = (name or "").strip().upper()
    if not normalized:
        raise ValueError("school name must not be empty")
    return normalized
