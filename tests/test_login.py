"""Tests for hybrid login and migrate-on-login."""

import pytest

from authgate.config import Settings
from authgate.identity.errors import ErrorKind, IdentityProviderError
from authgate.identity.memory import InMemoryIdentityProvider
from authgate.service.errors import (
    AuthenticationError,
    DependencyUnavailableError,
    InconsistencyError,
    InvalidCredentialsError,
    MigrationFailedError,
)
from authgate.service.federation import FederationService
from authgate.service.login import INVALID_LOGIN_MESSAGE, HybridLoginOrchestrator
from authgate.service.passwords import hash_password
from authgate.storage.memory import MemoryStore
from authgate.storage.models import AuthProvider, FederationStatus

PASSWORD = "Password123"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def identity():
    return InMemoryIdentityProvider()


@pytest.fixture
def login_flow(store, identity):
    federation = FederationService(store, identity, Settings())
    return HybridLoginOrchestrator(store, identity, federation)


class _EnumerationProtectedProvider(InMemoryIdentityProvider):
    """Answers every failed sign-in with the ambiguous credentials code."""

    async def sign_in(self, email, password):
        try:
            return await super().sign_in(email, password)
        except IdentityProviderError as exc:
            raise IdentityProviderError(
                ErrorKind.INVALID_CREDENTIALS, raw_code="INVALID_LOGIN_CREDENTIALS"
            ) from exc


class _LateWinnerProvider(InMemoryIdentityProvider):
    """Another request creates the identity right after the first email lookup."""

    def __init__(self, winner_password=PASSWORD):
        super().__init__()
        self.winner_password = winner_password
        self.lookups = 0

    async def get_user_by_email(self, email):
        self.lookups += 1
        if self.lookups == 1:
            return None
        return await super().get_user_by_email(email)

    async def create_user(self, *, email, password, display_name=None, disabled=False):
        await super().create_user(email=email, password=self.winner_password)
        raise IdentityProviderError(ErrorKind.ALREADY_EXISTS, raw_code="EMAIL_EXISTS")


class TestExternalLogin:
    """Accounts already known to the identity provider."""

    async def test_creates_local_row_on_first_login(self, login_flow, identity, store):
        await identity.create_user(email="ext@example.com", password=PASSWORD)

        result = await login_flow.login("ext@example.com", PASSWORD)

        assert result.migrated is False
        assert result.user.auth_provider == AuthProvider.EXTERNAL
        assert result.tokens.id_token
        assert len(store.users) == 1

    async def test_wrong_password_is_uniform(self, login_flow, identity):
        await identity.create_user(email="ext@example.com", password=PASSWORD)

        with pytest.raises(InvalidCredentialsError) as exc_info:
            await login_flow.login("ext@example.com", "wrong-pass1")

        assert exc_info.value.message == INVALID_LOGIN_MESSAGE

    async def test_provider_outage_is_not_a_credentials_error(self, login_flow, identity):
        identity.fail_next("sign_in", ErrorKind.DEPENDENCY_UNAVAILABLE)

        with pytest.raises(DependencyUnavailableError):
            await login_flow.login("ext@example.com", PASSWORD)

    async def test_soft_deleted_row_is_disabled(self, login_flow, identity, store):
        await identity.create_user(email="gone@example.com", password=PASSWORD)
        result = await login_flow.login("gone@example.com", PASSWORD)
        await store.soft_delete_user(result.user.id)

        with pytest.raises(AuthenticationError) as exc_info:
            await login_flow.login("gone@example.com", PASSWORD)

        assert exc_info.value.error_code == "account_disabled"


class TestLocalFallback:
    """Accounts the identity provider has never seen."""

    async def test_unknown_everywhere_matches_wrong_password(self, login_flow, identity, store):
        """Unknown email and wrong password produce identical errors."""
        await store.create_user(
            email="local@example.com",
            username="local",
            password_hash=hash_password(PASSWORD),
        )

        with pytest.raises(InvalidCredentialsError) as unknown:
            await login_flow.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await login_flow.login("local@example.com", "Wrong12345")

        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code
        assert unknown.value.status_code == wrong.value.status_code

    async def test_wrong_password_has_no_side_effects(self, login_flow, identity, store):
        user = await store.create_user(
            email="local@example.com",
            username="local",
            password_hash=hash_password(PASSWORD),
        )

        with pytest.raises(InvalidCredentialsError):
            await login_flow.login("local@example.com", "Wrong12345")

        stored = await store.get_user(user.id)
        assert stored.external_auth_id is None
        assert stored.auth_provider == AuthProvider.LOCAL
        assert identity.users == {}

    async def test_row_without_hash_requires_reset(self, login_flow, store):
        await store.create_user(email="nohash@example.com", username="nohash")

        with pytest.raises(AuthenticationError) as exc_info:
            await login_flow.login("nohash@example.com", PASSWORD)

        assert exc_info.value.error_code == "password_reset_required"

    async def test_migrates_on_login(self, login_flow, identity, store):
        """A verified local password creates the external identity and links it."""
        user = await store.create_user(
            email="legacy@example.com",
            username="legacy",
            password_hash=hash_password(PASSWORD),
            token_balance=7,
        )

        result = await login_flow.login("legacy@example.com", PASSWORD)

        assert result.migrated is True
        assert result.user.id == user.id
        assert result.user.auth_provider == AuthProvider.HYBRID
        assert result.user.federation_status == FederationStatus.ACTIVE
        assert result.user.token_balance == 7
        assert len(identity.users) == 1
        external = next(iter(identity.users.values()))
        assert result.user.external_auth_id == external.id
        assert identity.passwords[external.id] == PASSWORD

    async def test_second_login_uses_provider(self, login_flow, identity, store):
        await store.create_user(
            email="legacy@example.com",
            username="legacy",
            password_hash=hash_password(PASSWORD),
        )
        await login_flow.login("legacy@example.com", PASSWORD)

        again = await login_flow.login("legacy@example.com", PASSWORD)

        assert again.migrated is False
        assert len(identity.users) == 1
        assert len(store.users) == 1

    async def test_inactive_account_migrates_disabled(self, login_flow, identity, store):
        await store.create_user(
            email="inactive@example.com",
            username="inactive",
            password_hash=hash_password(PASSWORD),
            is_active=False,
        )

        with pytest.raises(AuthenticationError) as exc_info:
            await login_flow.login("inactive@example.com", PASSWORD)

        assert exc_info.value.error_code == "account_disabled"
        external = next(iter(identity.users.values()))
        assert external.disabled is True

    async def test_create_failure_marks_row_failed(self, login_flow, identity, store):
        user = await store.create_user(
            email="legacy@example.com",
            username="legacy",
            password_hash=hash_password(PASSWORD),
        )
        identity.fail_next("create_user", ErrorKind.DEPENDENCY_UNAVAILABLE)

        with pytest.raises(MigrationFailedError):
            await login_flow.login("legacy@example.com", PASSWORD)

        stored = await store.get_user(user.id)
        assert stored.federation_status == FederationStatus.FAILED
        assert stored.external_auth_id is None

    async def test_existing_external_identity_is_reused(self, store):
        """Another request migrated the account between sign-in and lookup."""
        identity = _EnumerationProtectedProvider()
        login_flow = HybridLoginOrchestrator(
            store, identity, FederationService(store, identity, Settings())
        )
        user = await store.create_user(
            email="racer@example.com",
            username="racer",
            password_hash=hash_password(PASSWORD),
        )
        # Simulate the concurrent migration landing after the first sign-in attempt
        original_lookup = identity.get_user_by_email
        calls = {"count": 0}

        async def lookup_after_race(email):
            calls["count"] += 1
            if calls["count"] == 2:
                await identity.create_user(email=email, password=PASSWORD)
            return await original_lookup(email)

        identity.get_user_by_email = lookup_after_race

        result = await login_flow.login("racer@example.com", PASSWORD)

        assert result.migrated is True
        assert len(identity.users) == 1
        assert result.user.id == user.id

    async def test_create_losing_the_race_links_the_winner(self, store):
        """An already-exists answer from create_user counts as migrated concurrently."""
        identity = _LateWinnerProvider()
        login_flow = HybridLoginOrchestrator(
            store, identity, FederationService(store, identity, Settings())
        )
        user = await store.create_user(
            email="racer@example.com",
            username="racer",
            password_hash=hash_password(PASSWORD),
        )

        result = await login_flow.login("racer@example.com", PASSWORD)

        assert result.migrated is True
        assert len(identity.users) == 1
        stored = await store.get_user(user.id)
        assert stored.external_auth_id == next(iter(identity.users))
        assert stored.auth_provider == AuthProvider.HYBRID
        assert stored.federation_status == FederationStatus.ACTIVE

    async def test_linked_row_without_external_record(self, login_flow, store):
        """A verified password on a dangling link is reported, not re-linked."""
        user = await store.create_user(
            email="dangling@example.com",
            username="dangling",
            password_hash=hash_password(PASSWORD),
            external_auth_id="vanished",
            auth_provider=AuthProvider.HYBRID,
        )

        with pytest.raises(InconsistencyError):
            await login_flow.login("dangling@example.com", PASSWORD)

        assert (await store.get_user(user.id)).external_auth_id == "vanished"


class TestEnumerationProtection:
    """The provider hides whether the email exists."""

    async def test_ambiguous_code_for_unknown_email_falls_back(self, store):
        identity = _EnumerationProtectedProvider()
        login_flow = HybridLoginOrchestrator(
            store, identity, FederationService(store, identity, Settings())
        )
        await store.create_user(
            email="legacy@example.com",
            username="legacy",
            password_hash=hash_password(PASSWORD),
        )

        result = await login_flow.login("legacy@example.com", PASSWORD)

        assert result.migrated is True

    async def test_ambiguous_code_for_known_email_is_rejected(self, store):
        identity = _EnumerationProtectedProvider()
        login_flow = HybridLoginOrchestrator(
            store, identity, FederationService(store, identity, Settings())
        )
        await identity.create_user(email="ext@example.com", password=PASSWORD)

        with pytest.raises(InvalidCredentialsError):
            await login_flow.login("ext@example.com", "Wrong12345")


class TestEndToEnd:
    """A legacy account through its whole lifecycle."""

    async def test_legacy_account_lifecycle(self, login_flow, identity, store):
        user = await store.create_user(
            email="journey@example.com",
            username="journey",
            password_hash=hash_password(PASSWORD),
        )

        with pytest.raises(InvalidCredentialsError):
            await login_flow.login("journey@example.com", "Wrong12345")
        assert identity.users == {}

        migrated = await login_flow.login("journey@example.com", PASSWORD)
        assert migrated.migrated is True

        again = await login_flow.login("journey@example.com", PASSWORD)
        assert again.migrated is False
        assert again.user.id == user.id
        assert again.user.external_auth_id == migrated.user.external_auth_id
