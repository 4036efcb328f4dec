"""The verification cache fails open."""

from redis.exceptions import ConnectionError as RedisConnectionError

from authgate.storage.redis_cache import RedisCache


class BrokenRedis:
    async def get(self, key):
        raise RedisConnectionError("down")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("down")

    async def delete(self, key):
        raise RedisConnectionError("down")

    async def ping(self):
        raise RedisConnectionError("down")


class DictRedis:
    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        return True

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0


def _cache(client):
    cache = RedisCache("redis://localhost:6379/15", prefix="t:")
    cache.client = client
    return cache


async def test_backend_errors_are_misses():
    cache = _cache(BrokenRedis())

    assert await cache.get_verification("tok") is None
    assert await cache.set_verification("tok", {"a": 1}, 30) is False
    assert await cache.invalidate_verification("tok") is False
    assert await cache.ping() is False


async def test_non_positive_ttl_is_not_stored():
    client = DictRedis()
    cache = _cache(client)

    assert await cache.set_verification("tok", {"a": 1}, 0) is False
    assert client.data == {}


async def test_round_trip_and_corrupt_payload():
    client = DictRedis()
    cache = _cache(client)

    await cache.set_verification("tok", {"user_id": "u1"}, 30)
    assert await cache.get_verification("tok") == {"user_id": "u1"}

    key = next(iter(client.data))
    client.data[key] = "{not json"
    assert await cache.get_verification("tok") is None


def test_keys_are_hashed_and_prefixed():
    cache = _cache(DictRedis())

    key = cache._token_key("secret-token")

    assert key.startswith("t:token:")
    assert "secret-token" not in key
    assert key == cache._token_key("secret-token")
