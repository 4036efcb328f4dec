import json
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import psycopg
import pytest

from authgate.logging import get_logger
from authgate.storage.errors import StorageUnavailable
from authgate.storage.models import AuthProvider, FederationStatus, ProviderData, UserType
from authgate.storage.postgres import PostgresStore, _constraint_violation


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class _RefusedConnection:
    async def __aenter__(self):
        raise psycopg.OperationalError("connection refused")

    async def __aexit__(self, *exc_info):
        return False


class RefusingPool:
    def connection(self):
        return _RefusedConnection()


def _bare_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unused"
    store.logger = get_logger("test")
    return store


def test_constraint_names_map_to_fields():
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="app_user_email_key"))

    violation = _constraint_violation(exc, "user already exists")

    assert violation.field == "email"
    assert violation.detail["constraint"] == "app_user_email_key"
    assert violation.message == "user already exists"


def test_unknown_constraint_keeps_its_name():
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="some_other_idx"))

    assert _constraint_violation(exc, "conflict").field == "some_other_idx"


def test_missing_diag_yields_no_field():
    assert _constraint_violation(Exception("boom"), "conflict").field is None


def test_user_from_row_parses_enums_and_json():
    now = datetime.now(timezone.utc)
    user_id = uuid.uuid4()
    row = {
        "id": user_id,
        "email": "row@example.com",
        "username": "row",
        "password_hash": None,
        "user_type": "admin",
        "is_active": True,
        "token_balance": 5,
        "last_login": None,
        "created_at": now,
        "updated_at": now,
        "external_auth_id": "ext-1",
        "auth_provider": "hybrid",
        "provider_data": json.dumps({"email_verified": True, "unknown_key": 1}),
        "last_sync": now,
        "federation_status": "syncing",
    }

    user = PostgresStore._user_from_row(row)

    assert user.id == str(user_id)
    assert user.user_type == UserType.ADMIN
    assert user.auth_provider == AuthProvider.HYBRID
    assert user.federation_status == FederationStatus.SYNCING
    assert user.provider_data == ProviderData(email_verified=True)


def test_user_from_row_defaults():
    row = {"id": "u1", "email": "bare@example.com", "username": "bare"}

    user = PostgresStore._user_from_row(row)

    assert user.auth_provider == AuthProvider.LOCAL
    assert user.federation_status == FederationStatus.ACTIVE
    assert user.provider_data is None
    assert user.token_balance == 0


def test_db_value_serializes_provider_data_and_enums():
    data = ProviderData(display_name="Ada")

    assert json.loads(PostgresStore._db_value("provider_data", data)) == {"display_name": "Ada"}
    assert PostgresStore._db_value("provider_data", None) is None
    assert PostgresStore._db_value("auth_provider", AuthProvider.EXTERNAL) == "external"
    assert PostgresStore._db_value("username", "ada") == "ada"


async def test_get_user_rejects_non_uuid_without_query():
    store = _bare_store(DummyPool())

    assert await store.get_user("not-a-uuid") is None
    assert await store.adjust_token_balance("not-a-uuid", 1) is None


async def test_unreachable_database_is_storage_unavailable():
    store = _bare_store(RefusingPool())

    with pytest.raises(StorageUnavailable):
        await store.get_user_by_email("down@example.com")


async def test_ping_reports_unreachable_database():
    store = _bare_store(RefusingPool())

    assert await store.ping() is False
