from __future__ import annotations

import copy
import threading
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

from authgate.logging import get_logger
from authgate.storage.common import normalize_school_name, validate_user_updates
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import (
    AuthProvider,
    FederationStatus,
    ProviderData,
    School,
    User,
    UserType,
)

# Rows touched by the current task's transaction, as they were before the first write
_journal: ContextVar[Optional["_Journal"]] = ContextVar("memory_store_journal", default=None)


class _Journal:
    def __init__(self) -> None:
        self.users: Dict[str, Optional[User]] = {}
        self.schools: Dict[int, Optional[School]] = {}


class MemoryStore:
    """In-process user store for tests and local development.

    Rows are handed out as copies so callers never mutate stored state
    without going through ``update_user``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.schools: Dict[int, School] = {}
        self._school_seq: int = 1
        # RLock for all data operations; no await happens while it is held
        self._data_lock = threading.RLock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _check_unique(
        self,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        external_auth_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if external_auth_id is not None and existing.external_auth_id == external_auth_id:
                raise ConstraintViolation(
                    "external_auth_id already linked", {"field": "external_auth_id"}
                )

    @staticmethod
    def _check_local_unlinked(
        auth_provider: AuthProvider, external_auth_id: Optional[str]
    ) -> None:
        if auth_provider == AuthProvider.LOCAL and external_auth_id is not None:
            raise ConstraintViolation(
                "local accounts cannot carry an external_auth_id",
                {"field": "auth_provider", "constraint": "app_user_local_unlinked"},
            )

    def _journal_user(self, user_id: str) -> None:
        journal = _journal.get()
        if journal is not None and user_id not in journal.users:
            journal.users[user_id] = copy.deepcopy(self.users.get(user_id))

    def _journal_school(self, school_id: int) -> None:
        journal = _journal.get()
        if journal is not None and school_id not in journal.schools:
            journal.schools[school_id] = copy.deepcopy(self.schools.get(school_id))

    # users
    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return copy.deepcopy(user) if user else None

    async def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.external_auth_id == external_id),
                None,
            )
            return copy.deepcopy(user) if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return copy.deepcopy(user) if user else None

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
    ) -> User:
        now = self._now()
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            username=username,
            password_hash=password_hash,
            user_type=UserType(user_type),
            is_active=is_active,
            token_balance=token_balance,
            created_at=now,
            updated_at=now,
            external_auth_id=external_auth_id,
            auth_provider=AuthProvider(auth_provider),
            provider_data=copy.deepcopy(provider_data),
            last_sync=last_sync,
            federation_status=FederationStatus(federation_status),
        )
        self._check_local_unlinked(user.auth_provider, external_auth_id)
        with self._data_lock:
            self._check_unique(
                email=email, username=username, external_auth_id=external_auth_id
            )
            self._journal_user(user.id)
            self.users[user.id] = user
        return copy.deepcopy(user)

    async def update_user(self, user_id: str, **fields) -> Optional[User]:
        updates = validate_user_updates(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._check_unique(
                email=updates.get("email"),
                username=updates.get("username"),
                external_auth_id=updates.get("external_auth_id"),
                exclude_id=user_id,
            )
            self._check_local_unlinked(
                AuthProvider(updates.get("auth_provider", user.auth_provider)),
                updates.get("external_auth_id", user.external_auth_id),
            )
            self._journal_user(user_id)
            for key, value in updates.items():
                setattr(user, key, copy.deepcopy(value))
            user.updated_at = self._now()
            return copy.deepcopy(user)

    async def soft_delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self._journal_user(user_id)
            user.is_active = False
            user.updated_at = self._now()
            return True

    async def list_users_with_federation_status(
        self, status: FederationStatus
    ) -> List[User]:
        status = FederationStatus(status)
        with self._data_lock:
            return [
                copy.deepcopy(u)
                for u in self.users.values()
                if u.federation_status == status
            ]

    async def list_users_with_external_id(self) -> List[User]:
        with self._data_lock:
            return [
                copy.deepcopy(u) for u in self.users.values() if u.external_auth_id
            ]

    async def count_users_by_auth_provider(self) -> Dict[str, int]:
        counts = {provider.value: 0 for provider in AuthProvider}
        with self._data_lock:
            for user in self.users.values():
                counts[user.auth_provider.value] += 1
        return counts

    async def count_users_with_federation_status(self, status: FederationStatus) -> int:
        status = FederationStatus(status)
        with self._data_lock:
            return sum(1 for u in self.users.values() if u.federation_status == status)

    async def adjust_token_balance(self, user_id: str, delta: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.token_balance + delta < 0:
                raise ConstraintViolation(
                    "insufficient token balance", {"field": "token_balance"}
                )
            self._journal_user(user_id)
            user.token_balance += delta
            user.updated_at = self._now()
            return copy.deepcopy(user)

    # schools
    async def get_school(self, school_id: int) -> Optional[School]:
        with self._data_lock:
            school = self.schools.get(school_id)
            return copy.deepcopy(school) if school else None

    async def get_school_by_name(self, name: str) -> Optional[School]:
        normalized = normalize_school_name(name)
        with self._data_lock:
            school = next(
                (s for s in self.schools.values() if s.name.upper() == normalized), None
            )
            return copy.deepcopy(school) if school else None

    async def _insert_school(self, name: str) -> School:
        with self._data_lock:
            if any(s.name.upper() == name for s in self.schools.values()):
                raise ConstraintViolation("school already exists", {"field": "name"})
            school = School(id=self._school_seq, name=name)
            self._school_seq += 1
            self._journal_school(school.id)
            self.schools[school.id] = school
            return copy.deepcopy(school)

    async def get_or_create_school(self, name: str) -> School:
        normalized = normalize_school_name(name)
        async with self.transaction():
            try:
                return await self._insert_school(normalized)
            except ConstraintViolation:
                existing = await self.get_school_by_name(normalized)
                if existing is None:
                    raise
                return existing

    async def list_schools(self, limit: int = 1000) -> List[School]:
        with self._data_lock:
            ordered = sorted(self.schools.values(), key=lambda s: s.name)
            return [copy.deepcopy(s) for s in ordered[:limit]]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MemoryStore"]:
        """Undo this block's own writes if it raises.

        Only rows the block wrote are restored, so writes made concurrently
        by other tasks survive a rollback. Nested calls join the outermost
        transaction. School ids are never reused.
        """
        if _journal.get() is not None:
            yield self
            return
        journal = _Journal()
        token = _journal.set(journal)
        try:
            yield self
        except BaseException:
            with self._data_lock:
                for user_id, before in journal.users.items():
                    if before is None:
                        self.users.pop(user_id, None)
                    else:
                        self.users[user_id] = before
                for school_id, before in journal.schools.items():
                    if before is None:
                        self.schools.pop(school_id, None)
                    else:
                        self.schools[school_id] = before
            self.logger.debug(
                "memory_transaction_rolled_back",
                users=len(journal.users),
                schools=len(journal.schools),
            )
            raise
        finally:
            _journal.reset(token)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
