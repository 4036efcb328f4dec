from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authgate.config import IdentityBackend, Settings, get_settings, reset_settings_cache
from authgate.identity.base import IdentityProvider
from authgate.identity.firebase import FirebaseIdentityClient
from authgate.identity.memory import InMemoryIdentityProvider
from authgate.logging import get_logger
from authgate.service.auth import AuthService
from authgate.service.schools import SchoolService
from authgate.storage.memory import MemoryStore
from authgate.storage.postgres import PostgresStore
from authgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_identity_provider(settings: Settings) -> IdentityProvider:
    if settings.identity_backend == IdentityBackend.MEMORY:
        return InMemoryIdentityProvider()
    if not settings.firebase_project_id:
        raise RuntimeError(
            "FIREBASE_PROJECT_ID is required when IDENTITY_BACKEND=firebase; "
            "set IDENTITY_BACKEND=memory for local development."
        )
    if not settings.firebase_auth_emulator_host and not settings.firebase_api_key:
        raise RuntimeError("FIREBASE_API_KEY is required outside the Auth emulator")
    return FirebaseIdentityClient(
        project_id=settings.firebase_project_id,
        api_key=settings.firebase_api_key,
        client_email=settings.firebase_client_email,
        private_key=settings.firebase_private_key,
        emulator_host=settings.firebase_auth_emulator_host,
        timeout=settings.identity_request_timeout_seconds,
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            identity_backend=self.settings.identity_backend.value,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, PostgresStore] = (
            MemoryStore()
            if self.settings.use_memory_store
            else PostgresStore(self.settings.database_url)
        )
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
        )

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                cache_cls = SyncRedisCache if self.settings.test_mode else RedisCache
                cache = cache_cls(
                    self.settings.redis_url, prefix=self.settings.token_cache_prefix
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the token verification cache; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run without it."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; every token "
                    "verification goes to the identity provider."
                ),
                mode=fallback_mode,
            )

        self.identity = build_identity_provider(self.settings)
        self.auth = AuthService(self.store, self.identity, self.settings, cache=self.cache)
        self.federation = self.auth.federation
        self.schools = SchoolService(self.store, list_limit=self.settings.school_list_limit)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            identity_backend=self.settings.identity_backend.value,
        )

    async def start(self) -> None:
        """Open pooled connections; the memory store has nothing to open."""
        if isinstance(self.store, PostgresStore):
            await self.store.open()
        logger.info("runtime_started")

    async def close(self) -> None:
        await self.identity.close()
        if self.cache is not None:
            await self.cache.close()
        await self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        # SyncRedisCache wraps a sync client that can be closed outside a loop
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
