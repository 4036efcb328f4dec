"""Tests for ForgotPasswordMigrationService."""

import pytest

from authgate.config import Settings
from authgate.identity.errors import ErrorKind, IdentityProviderError
from authgate.identity.memory import InMemoryIdentityProvider
from authgate.service.errors import RateLimitedError, ValidationError
from authgate.service.password_reset import (
    RESET_EMAIL_FAILED_MESSAGE,
    RESET_MIGRATION_FAILED_MESSAGE,
    RESET_SENT_MESSAGE,
    ForgotPasswordMigrationService,
)
from authgate.service.passwords import hash_password, verify_password
from authgate.storage.memory import MemoryStore
from authgate.storage.models import AuthProvider, FederationStatus


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def identity():
    return InMemoryIdentityProvider()


@pytest.fixture
def service(store, identity):
    return ForgotPasswordMigrationService(store, identity, Settings())


class _LateWinnerProvider(InMemoryIdentityProvider):
    """Another request creates the identity right after the first email lookup."""

    def __init__(self):
        super().__init__()
        self.lookups = 0

    async def get_user_by_email(self, email):
        self.lookups += 1
        if self.lookups == 1:
            return None
        return await super().get_user_by_email(email)

    async def create_user(self, *, email, password, display_name=None, disabled=False):
        await super().create_user(email=email, password="winner-secret1")
        raise IdentityProviderError(ErrorKind.ALREADY_EXISTS, raw_code="EMAIL_EXISTS")


async def _legacy_user(store, email="legacy@example.com", **kwargs):
    return await store.create_user(
        email=email,
        username=email.split("@")[0],
        password_hash=hash_password("Password123"),
        **kwargs,
    )


class TestRequestReset:
    """Reset requests for every kind of account."""

    async def test_unknown_email_reports_success_silently(self, service, identity):
        outcome = await service.request_reset("nobody@example.com")

        assert outcome.success is True
        assert outcome.migrated is False
        assert outcome.message == RESET_SENT_MESSAGE
        assert identity.sent_reset_emails == []

    async def test_local_account_is_migrated(self, service, identity, store):
        user = await _legacy_user(store)

        outcome = await service.request_reset("legacy@example.com")

        assert outcome.success is True
        assert outcome.migrated is True
        stored = await store.get_user(user.id)
        assert stored.auth_provider == AuthProvider.HYBRID
        assert stored.federation_status == FederationStatus.ACTIVE
        assert stored.external_auth_id in identity.users
        assert identity.sent_reset_emails == ["legacy@example.com"]

    async def test_temporary_password_is_not_the_local_one(self, service, identity, store):
        await _legacy_user(store)

        await service.request_reset("legacy@example.com")

        external_id = next(iter(identity.users))
        temporary = identity.passwords[external_id]
        assert temporary != "Password123"
        assert len(temporary) >= 16

    async def test_repeated_requests_create_one_identity(self, service, identity, store):
        await _legacy_user(store)

        for _ in range(3):
            outcome = await service.request_reset("legacy@example.com")
            assert outcome.success is True

        assert len(identity.users) == 1
        assert len(identity.sent_reset_emails) == 3

    async def test_linked_account_only_sends_email(self, service, identity, store):
        external = await identity.create_user(email="linked@example.com", password="secret123")
        await store.create_user(
            email="linked@example.com",
            username="linked",
            external_auth_id=external.id,
            auth_provider=AuthProvider.EXTERNAL,
        )

        outcome = await service.request_reset("linked@example.com")

        assert outcome.success is True
        assert outcome.migrated is False
        assert len(identity.users) == 1
        assert identity.sent_reset_emails == ["linked@example.com"]

    async def test_email_failure_leaves_row_syncing(self, service, identity, store):
        user = await _legacy_user(store)
        identity.fail_next("send_password_reset_email", ErrorKind.DEPENDENCY_UNAVAILABLE)

        outcome = await service.request_reset("legacy@example.com")

        assert outcome.success is False
        assert outcome.migrated is True
        assert outcome.message == RESET_EMAIL_FAILED_MESSAGE
        stored = await store.get_user(user.id)
        assert stored.federation_status == FederationStatus.SYNCING
        assert stored.external_auth_id is not None

    async def test_retry_after_email_failure_clears_syncing(self, service, identity, store):
        user = await _legacy_user(store)
        identity.fail_next("send_password_reset_email", ErrorKind.DEPENDENCY_UNAVAILABLE)
        await service.request_reset("legacy@example.com")

        outcome = await service.request_reset("legacy@example.com")

        assert outcome.success is True
        assert (await store.get_user(user.id)).federation_status == FederationStatus.ACTIVE

    async def test_create_failure_marks_row_failed(self, service, identity, store):
        user = await _legacy_user(store)
        identity.fail_next("create_user", ErrorKind.DEPENDENCY_UNAVAILABLE)

        outcome = await service.request_reset("legacy@example.com")

        assert outcome.success is False
        assert outcome.migrated is False
        assert outcome.message == RESET_MIGRATION_FAILED_MESSAGE
        stored = await store.get_user(user.id)
        assert stored.federation_status == FederationStatus.FAILED
        assert stored.external_auth_id is None

    async def test_existing_external_identity_is_linked(self, service, identity, store):
        """A provider record created elsewhere is adopted, not duplicated."""
        user = await _legacy_user(store)
        external = await identity.create_user(email="legacy@example.com", password="secret123")

        await service.request_reset("legacy@example.com")

        assert (await store.get_user(user.id)).external_auth_id == external.id
        assert len(identity.users) == 1

    async def test_create_losing_the_race_links_the_winner(self, store):
        """An already-exists answer from create_user counts as migrated concurrently."""
        identity = _LateWinnerProvider()
        service = ForgotPasswordMigrationService(store, identity, Settings())
        user = await _legacy_user(store)

        outcome = await service.request_reset("legacy@example.com")

        assert outcome.success is True
        assert outcome.migrated is True
        assert len(identity.users) == 1
        stored = await store.get_user(user.id)
        assert stored.external_auth_id == next(iter(identity.users))
        assert stored.federation_status == FederationStatus.ACTIVE
        assert identity.sent_reset_emails == ["legacy@example.com"]

    async def test_linked_row_with_missing_record_stays_generic(self, service, identity, store):
        await store.create_user(
            email="dangling@example.com",
            username="dangling",
            external_auth_id="vanished",
            auth_provider=AuthProvider.HYBRID,
        )

        outcome = await service.request_reset("dangling@example.com")

        assert outcome.success is True
        assert identity.sent_reset_emails == []

    async def test_rate_limit_on_linked_account_propagates(self, service, identity, store):
        external = await identity.create_user(email="busy@example.com", password="secret123")
        await store.create_user(
            email="busy@example.com",
            username="busy",
            external_auth_id=external.id,
            auth_provider=AuthProvider.HYBRID,
        )
        identity.fail_next("send_password_reset_email", ErrorKind.RATE_LIMITED)

        with pytest.raises(RateLimitedError):
            await service.request_reset("busy@example.com")


class TestConfirmReset:
    """Applying a reset code."""

    async def test_updates_both_credential_stores(self, service, identity, store):
        user = await _legacy_user(store)
        await service.request_reset("legacy@example.com")
        code = next(iter(identity.reset_codes))

        updated = await service.confirm_reset(code, "NewPassword456")

        assert updated.id == user.id
        assert verify_password("NewPassword456", updated.password_hash)
        assert identity.passwords[updated.external_auth_id] == "NewPassword456"
        assert code not in identity.reset_codes

    async def test_weak_password_rejected_before_provider_call(self, service, identity, store):
        await _legacy_user(store)
        await service.request_reset("legacy@example.com")
        code = next(iter(identity.reset_codes))

        with pytest.raises(ValidationError):
            await service.confirm_reset(code, "short")

        assert code in identity.reset_codes

    async def test_invalid_code(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.confirm_reset("not-a-code", "NewPassword456")

        assert exc_info.value.message == "Invalid or expired reset code"


class TestMigrationStats:
    async def test_counts_by_provider(self, service, store):
        await _legacy_user(store, email="a@example.com")
        await _legacy_user(store, email="b@example.com", auth_provider=AuthProvider.HYBRID)
        await _legacy_user(
            store,
            email="c@example.com",
            auth_provider=AuthProvider.EXTERNAL,
            federation_status=FederationStatus.FAILED,
        )

        stats = await service.migration_stats()

        assert stats.as_dict() == {
            "total": 3,
            "local": 1,
            "external": 1,
            "hybrid": 1,
            "failed": 1,
        }
