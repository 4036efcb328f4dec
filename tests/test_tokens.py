"""Tests for token verification, caching, refresh and revocation."""

from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authgate.config import Settings
from authgate.identity.errors import ErrorKind
from authgate.identity.memory import InMemoryIdentityProvider
from authgate.service.errors import (
    AuthenticationError,
    DependencyUnavailableError,
    InconsistencyError,
    ServerError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)
from authgate.service.federation import FederationService
from authgate.service.tokens import TokenVerificationService
from authgate.storage.memory import MemoryStore
from authgate.storage.models import AuthProvider
from authgate.storage.redis_cache import RedisCache


class FakeRedis:
    """Dict-backed stand-in for the async Redis client."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        return None


@pytest.fixture
def settings():
    return Settings(token_cache_ttl_seconds=300, check_revoked_tokens=True)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def identity():
    return InMemoryIdentityProvider()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    cache = RedisCache("redis://localhost:6379/15", prefix="test:")
    cache.client = fake_redis
    return cache


@pytest.fixture
def tokens(store, identity, settings, cache):
    federation = FederationService(store, identity, settings)
    return TokenVerificationService(store, identity, federation, settings, cache=cache)


async def _signed_up(identity, email="token@example.com"):
    return await identity.sign_up(email, "Password123")


class TestVerify:
    """Fresh verifications against the provider."""

    async def test_valid_token_resolves_local_user(self, tokens, identity, store):
        bundle = await _signed_up(identity)

        verification = await tokens.verify(bundle.id_token)

        assert verification.cached is False
        assert verification.external_id == bundle.external_id
        assert verification.user.email == "token@example.com"
        assert len(store.users) == 1

    async def test_missing_token(self, tokens):
        with pytest.raises(TokenInvalidError):
            await tokens.verify("")

    async def test_garbage_token(self, tokens):
        with pytest.raises(TokenInvalidError):
            await tokens.verify("not-a-token")

    async def test_expired_token(self, tokens, identity):
        bundle = await _signed_up(identity)
        identity.id_tokens[bundle.id_token].expires_at = datetime.now(timezone.utc) - timedelta(
            seconds=1
        )

        with pytest.raises(TokenExpiredError):
            await tokens.verify(bundle.id_token)

    async def test_revoked_token(self, tokens, identity):
        bundle = await _signed_up(identity)
        identity.users[bundle.external_id].tokens_valid_after = datetime.now(
            timezone.utc
        ) + timedelta(seconds=1)

        with pytest.raises(TokenRevokedError):
            await tokens.verify(bundle.id_token)

    async def test_revocation_check_can_be_disabled(self, store, identity):
        settings = Settings(check_revoked_tokens=False)
        federation = FederationService(store, identity, settings)
        service = TokenVerificationService(store, identity, federation, settings)
        bundle = await _signed_up(identity)
        identity.users[bundle.external_id].tokens_valid_after = datetime.now(
            timezone.utc
        ) + timedelta(seconds=1)

        verification = await service.verify(bundle.id_token)

        assert verification.external_id == bundle.external_id

    async def test_provider_outage(self, tokens, identity):
        identity.fail_next("verify_token", ErrorKind.DEPENDENCY_UNAVAILABLE)

        with pytest.raises(DependencyUnavailableError):
            await tokens.verify("anything")

    async def test_sync_failure_is_a_server_error(self, tokens, identity):
        bundle = await _signed_up(identity)
        identity.fail_next("get_user", ErrorKind.DEPENDENCY_UNAVAILABLE)

        with pytest.raises(ServerError) as exc_info:
            await tokens.verify(bundle.id_token)

        assert exc_info.value.message == "Failed to sync user data"

    async def test_email_bound_to_other_identity(self, tokens, identity, store):
        """An inconsistency is reported as such, not as a sync failure."""
        await store.create_user(
            email="token@example.com",
            username="token",
            external_auth_id="old-identity",
            auth_provider=AuthProvider.EXTERNAL,
        )
        bundle = await _signed_up(identity)

        with pytest.raises(InconsistencyError):
            await tokens.verify(bundle.id_token)

    async def test_inactive_local_user(self, tokens, identity, store):
        bundle = await _signed_up(identity)
        verification = await tokens.verify(bundle.id_token)
        await store.soft_delete_user(verification.user.id)
        fresh = await identity.sign_in("token@example.com", "Password123")

        with pytest.raises(AuthenticationError) as exc_info:
            await tokens.verify(fresh.id_token)

        assert exc_info.value.error_code == "account_disabled"


class TestCache:
    """Memoized verification results."""

    async def test_second_verify_is_cached(self, tokens, identity, fake_redis):
        bundle = await _signed_up(identity)

        first = await tokens.verify(bundle.id_token)
        second = await tokens.verify(bundle.id_token)

        assert first.cached is False
        assert second.cached is True
        assert second.user.id == first.user.id
        assert len(fake_redis.data) == 1

    async def test_raw_token_is_not_a_key(self, tokens, identity, fake_redis):
        bundle = await _signed_up(identity)

        await tokens.verify(bundle.id_token)

        key = next(iter(fake_redis.data))
        assert key.startswith("test:token:")
        assert bundle.id_token not in key

    async def test_ttl_never_exceeds_token_lifetime(self, tokens, identity, fake_redis):
        bundle = await _signed_up(identity)
        identity.id_tokens[bundle.id_token].expires_at = datetime.now(timezone.utc) + timedelta(
            seconds=60
        )

        await tokens.verify(bundle.id_token)

        ttl = next(iter(fake_redis.ttls.values()))
        assert 0 < ttl <= 60

    async def test_cached_entry_dropped_for_deleted_user(self, tokens, identity, store, fake_redis):
        bundle = await _signed_up(identity)
        verification = await tokens.verify(bundle.id_token)
        await store.soft_delete_user(verification.user.id)

        with pytest.raises(AuthenticationError):
            await tokens.verify(bundle.id_token)

    async def test_redis_outage_falls_through(self, tokens, identity, fake_redis):
        """Cache errors count as misses; verification still succeeds."""
        bundle = await _signed_up(identity)
        fake_redis.fail = True

        verification = await tokens.verify(bundle.id_token)

        assert verification.cached is False


class TestRefreshAndRevoke:
    async def test_refresh_rotates_tokens(self, tokens, identity):
        bundle = await _signed_up(identity)

        refreshed = await tokens.refresh(bundle.refresh_token)

        assert refreshed.id_token != bundle.id_token
        with pytest.raises(TokenInvalidError):
            await tokens.refresh(bundle.refresh_token)

    async def test_refresh_requires_token(self, tokens):
        with pytest.raises(TokenInvalidError):
            await tokens.refresh("")

    async def test_revoke_invalidates_cache_and_tokens(self, tokens, identity, fake_redis):
        bundle = await _signed_up(identity)
        await tokens.verify(bundle.id_token)
        assert fake_redis.data

        await tokens.revoke(bundle.external_id, bundle.id_token)

        assert fake_redis.data == {}
        with pytest.raises(TokenInvalidError):
            await tokens.refresh(bundle.refresh_token)
