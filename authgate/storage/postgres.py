from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from authgate.logging import get_logger
from authgate.storage.common import normalize_school_name, validate_user_updates
from authgate.storage.errors import ConstraintViolation, StorageUnavailable
from authgate.storage.models import (
    AuthProvider,
    FederationStatus,
    ProviderData,
    School,
    User,
    UserType,
)

# Connection bound by an open ``transaction()`` block in the current task
_tx_conn: ContextVar[Optional[psycopg.AsyncConnection]] = ContextVar(
    "postgres_store_tx_conn", default=None
)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT,
    user_type TEXT NOT NULL DEFAULT 'user'
        CHECK (user_type IN ('user', 'admin', 'superadmin', 'moderator')),
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    token_balance INTEGER NOT NULL DEFAULT 0 CHECK (token_balance >= 0),
    last_login TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    external_auth_id TEXT UNIQUE,
    auth_provider TEXT NOT NULL DEFAULT 'local'
        CHECK (auth_provider IN ('local', 'external', 'hybrid')),
    provider_data JSONB,
    last_sync TIMESTAMPTZ,
    federation_status TEXT NOT NULL DEFAULT 'active'
        CHECK (federation_status IN ('active', 'syncing', 'failed', 'disabled')),
    CONSTRAINT app_user_local_unlinked
        CHECK (auth_provider <> 'local' OR external_auth_id IS NULL)
);
CREATE INDEX IF NOT EXISTS app_user_federation_status_idx
    ON app_user (federation_status);
CREATE TABLE IF NOT EXISTS school (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS school_name_upper_idx ON school (UPPER(name));
"""

# Maps unique constraint / index names to the field reported to callers
_CONSTRAINT_FIELDS = {
    "app_user_email_key": "email",
    "app_user_username_key": "username",
    "app_user_external_auth_id_key": "external_auth_id",
    "app_user_token_balance_check": "token_balance",
    "app_user_local_unlinked": "auth_provider",
    "school_name_upper_idx": "name",
}


def _constraint_violation(exc: psycopg.Error, message: str) -> ConstraintViolation:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
    field = _CONSTRAINT_FIELDS.get(constraint or "", constraint)
    return ConstraintViolation(message, {"field": field, "constraint": constraint})


class PostgresStore:
    """Postgres-backed user store on an async psycopg pool."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def open(self) -> None:
        """Open the pool and create tables that are missing."""
        await self.pool.open()
        await self.ensure_schema()

    async def ensure_schema(self) -> None:
        async with self._connect() as conn:
            await conn.execute(_SCHEMA_SQL)
        self.logger.info("postgres_schema_ready")

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[psycopg.AsyncConnection]:
        bound = _tx_conn.get()
        if bound is not None:
            yield bound
            return
        try:
            async with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["PostgresStore"]:
        """Run the enclosed store calls on one connection inside one transaction.

        Nested calls join the outer transaction.
        """
        if _tx_conn.get() is not None:
            yield self
            return
        async with self._connect() as conn:
            async with conn.transaction():
                token = _tx_conn.set(conn)
                try:
                    yield self
                finally:
                    _tx_conn.reset(token)

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        provider_data = row.get("provider_data")
        if isinstance(provider_data, str):
            provider_data = json.loads(provider_data)
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row.get("password_hash"),
            user_type=UserType(row.get("user_type") or UserType.USER.value),
            is_active=row.get("is_active", True),
            token_balance=row.get("token_balance") or 0,
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
            external_auth_id=row.get("external_auth_id"),
            auth_provider=AuthProvider(row.get("auth_provider") or AuthProvider.LOCAL.value),
            provider_data=ProviderData.from_dict(provider_data),
            last_sync=row.get("last_sync"),
            federation_status=FederationStatus(
                row.get("federation_status") or FederationStatus.ACTIVE.value
            ),
        )

    @staticmethod
    def _school_from_row(row: Dict[str, Any]) -> School:
        return School(id=row["id"], name=row["name"], created_at=row.get("created_at"))

    @staticmethod
    def _db_value(key: str, value: Any) -> Any:
        if key == "provider_data":
            if value is None:
                return None
            data = value.to_dict() if isinstance(value, ProviderData) else value
            return json.dumps(data)
        if isinstance(value, (AuthProvider, FederationStatus, UserType)):
            return value.value
        return value

    async def _fetch_user(self, where: str, param: Any) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(f"SELECT * FROM app_user WHERE {where} = %s", (param,))
            row = await cur.fetchone()
        return self._user_from_row(row) if row else None

    @staticmethod
    def _is_uuid(value: str) -> bool:
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True

    # users
    async def get_user(self, user_id: str) -> Optional[User]:
        if not self._is_uuid(user_id):
            return None
        return await self._fetch_user("id", user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await self._fetch_user("email", email)

    async def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        return await self._fetch_user("external_auth_id", external_id)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        return await self._fetch_user("username", username)

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
        user_id = str(uuid.uuid4())
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    """
                    INSERT INTO app_user (
                        id, username, email, password_hash, user_type, is_active,
                        token_balance, external_auth_id, auth_provider, provider_data,
                        last_sync, federation_status
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        email,
                        password_hash,
                        UserType(user_type).value,
                        is_active,
                        token_balance,
                        external_auth_id,
                        AuthProvider(auth_provider).value,
                        self._db_value("provider_data", provider_data),
                        last_sync,
                        FederationStatus(federation_status).value,
                    ),
                )
                row = await cur.fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc, "user already exists") from exc
        except errors.CheckViolation as exc:
            raise _constraint_violation(exc, "user violates a check constraint") from exc
        return self._user_from_row(row)

    async def update_user(self, user_id: str, **fields) -> Optional[User]:
        updates = validate_user_updates(fields)
        if not updates:
            return await self.get_user(user_id)
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(key)) for key in updates
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL("UPDATE app_user SET {} WHERE id = %s RETURNING *").format(
            sql.SQL(", ").join(assignments)
        )
        params = [self._db_value(key, value) for key, value in updates.items()]
        params.append(user_id)
        try:
            async with self._connect() as conn:
                cur = await conn.execute(query, params)
                row = await cur.fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc, "user update conflicts with another row") from exc
        except errors.CheckViolation as exc:
            raise _constraint_violation(exc, "user update violates a check constraint") from exc
        return self._user_from_row(row) if row else None

    async def soft_delete_user(self, user_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "UPDATE app_user SET is_active = FALSE, updated_at = now() WHERE id = %s",
                (user_id,),
            )
        return cur.rowcount > 0

    async def list_users_with_federation_status(
        self, status: FederationStatus
    ) -> List[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user WHERE federation_status = %s ORDER BY created_at",
                (FederationStatus(status).value,),
            )
            rows = await cur.fetchall()
        return [self._user_from_row(row) for row in rows]

    async def list_users_with_external_id(self) -> List[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user WHERE external_auth_id IS NOT NULL ORDER BY created_at"
            )
            rows = await cur.fetchall()
        return [self._user_from_row(row) for row in rows]

    async def count_users_by_auth_provider(self) -> Dict[str, int]:
        counts = {provider.value: 0 for provider in AuthProvider}
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT auth_provider, COUNT(*) AS total FROM app_user GROUP BY auth_provider"
            )
            rows = await cur.fetchall()
        for row in rows:
            counts[row["auth_provider"]] = int(row["total"])
        return counts

    async def count_users_with_federation_status(self, status: FederationStatus) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT COUNT(*) AS total FROM app_user WHERE federation_status = %s",
                (FederationStatus(status).value,),
            )
            row = await cur.fetchone()
        return int(row["total"]) if row else 0

    async def adjust_token_balance(self, user_id: str, delta: int) -> Optional[User]:
        if not self._is_uuid(user_id):
            return None
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE app_user
                SET token_balance = token_balance + %s, updated_at = now()
                WHERE id = %s AND token_balance + %s >= 0
                RETURNING *
                """,
                (delta, user_id, delta),
            )
            row = await cur.fetchone()
        if row:
            return self._user_from_row(row)
        if await self.get_user(user_id) is None:
            return None
        raise ConstraintViolation("insufficient token balance", {"field": "token_balance"})

    # schools
    async def get_school(self, school_id: int) -> Optional[School]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM school WHERE id = %s", (school_id,))
            row = await cur.fetchone()
        return self._school_from_row(row) if row else None

    async def get_school_by_name(self, name: str) -> Optional[School]:
        normalized = normalize_school_name(name)
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM school WHERE UPPER(name) = %s", (normalized,)
            )
            row = await cur.fetchone()
        return self._school_from_row(row) if row else None

    async def get_or_create_school(self, name: str) -> School:
        normalized = normalize_school_name(name)
        async with self.transaction():
            async with self._connect() as conn:
                cur = await conn.execute(
                    "INSERT INTO school (name) VALUES (%s) ON CONFLICT DO NOTHING RETURNING *",
                    (normalized,),
                )
                row = await cur.fetchone()
            if row:
                return self._school_from_row(row)
            # Lost the race; the winner's row is visible once its insert committed
            existing = await self.get_school_by_name(normalized)
        if existing is None:
            raise ConstraintViolation("school could not be created", {"field": "name"})
        return existing

    async def list_schools(self, limit: int = 1000) -> List[School]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM school ORDER BY name LIMIT %s", (limit,)
            )
            rows = await cur.fetchall()
        return [self._school_from_row(row) for row in rows]

    async def ping(self) -> bool:
        try:
            async with self._connect() as conn:
                await conn.execute("SELECT 1")
            return True
        except StorageUnavailable:
            return False

    async def close(self) -> None:
        await self.pool.close()
