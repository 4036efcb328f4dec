from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Dict, List, Optional, Protocol

from authgate.storage.models import (
    AuthProvider,
    FederationStatus,
    ProviderData,
    School,
    User,
    UserType,
)


class UserStore(Protocol):
    """Row-level access to users and schools.

    Implemented by ``MemoryStore`` and ``PostgresStore``. Unique violations
    surface as ``ConstraintViolation``; connectivity problems as
    ``StorageUnavailable``.
    """

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def get_user_by_external_id(self, external_id: str) -> Optional[User]: ...

    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    async def create_user(
        self,
        *,
        email: str,
        username: str,
        password_hash: Optional[str] = None,
        user_type: UserType = UserType.USER,
        is_active: bool = True,
        token_balance: int = 0,
        external_auth_id: Optional[str] = None,
        auth_provider: AuthProvider = AuthProvider.LOCAL,
        provider_data: Optional[ProviderData] = None,
        last_sync: Optional[datetime] = None,
        federation_status: FederationStatus = FederationStatus.ACTIVE,
    ) -> User: ...

    async def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    async def soft_delete_user(self, user_id: str) -> bool: ...

    async def list_users_with_federation_status(
        self, status: FederationStatus
    ) -> List[User]: ...

    async def list_users_with_external_id(self) -> List[User]: ...

    async def count_users_by_auth_provider(self) -> Dict[str, int]: ...

    async def count_users_with_federation_status(self, status: FederationStatus) -> int: ...

    async def adjust_token_balance(self, user_id: str, delta: int) -> Optional[User]: ...

    async def get_school(self, school_id: int) -> Optional[School]: ...

    async def get_school_by_name(self, name: str) -> Optional[School]: ...

    async def get_or_create_school(self, name: str) -> School: ...

    async def list_schools(self, limit: int = 1000) -> List[School]: ...

    def transaction(self) -> AsyncContextManager["UserStore"]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
