from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authgate.logging import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Short-TTL memoization of token verification results.

    Every operation fails open: backend errors are logged and treated as a
    cache miss so verification falls through to the identity provider.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "authgate:",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _token_key(self, token: str) -> str:
        # Raw tokens never become Redis keys
        digest = hashlib.sha256(token.encode()).hexdigest()
        return f"{self.prefix}token:{digest}"

    async def get_verification(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.get(self._token_key(token))
        except (RedisError, OSError) as exc:
            logger.warning("token_cache_get_failed", error=str(exc))
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.warning("token_cache_decode_failed", error=str(exc))
            return None

    async def set_verification(
        self, token: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> bool:
        if ttl_seconds <= 0:
            return False
        try:
            await self.client.set(
                self._token_key(token), json.dumps(payload, default=str), ex=ttl_seconds
            )
            return True
        except (RedisError, OSError) as exc:
            logger.warning("token_cache_set_failed", error=str(exc))
            return False

    async def invalidate_verification(self, token: str) -> bool:
        try:
            return bool(await self.client.delete(self._token_key(token)))
        except (RedisError, OSError) as exc:
            logger.warning("token_cache_invalidate_failed", error=str(exc))
            return False

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as exc:
            logger.warning("token_cache_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        await self.client.aclose()


class _SyncClientAdapter:
    """Adapter that wraps a sync Redis client with async method signatures.

    This allows code that uses `await self.client.method()` to work
    with either async or sync Redis clients uniformly.
    """

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def ping(self) -> bool:
        return self._sync.ping()

    async def aclose(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """Redis cache for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues when each test runs in its own ``asyncio.run`` loop, but exposes
    the same awaitable API as ``RedisCache``.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "authgate:",
        socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()
