from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from portalauth.config import get_settings, reset_settings_cache
from portalauth.logging import get_logger
from portalauth.service.auth import AuthService
from portalauth.service.gate import AuthorizationGate
from portalauth.service.passwords import PasswordPolicy
from portalauth.service.roles import RoleService
from portalauth.service.sessions import SessionIssuer
from portalauth.storage.claim_cache import ClaimCache, MemoryClaimCache
from portalauth.storage.memory import MemoryStore
from portalauth.storage.postgres import PostgresStore
from portalauth.storage.redis_cache import RedisClaimCache, SyncRedisClaimCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
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
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    connect_timeout=self.settings.store_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = self._build_cache()
        self.passwords = PasswordPolicy()
        self.sessions = SessionIssuer(self.store, self.cache, self.settings)
        self.gate = AuthorizationGate(self.store, self.sessions, self.settings)
        self.roles = RoleService(self.store, self.sessions, self.gate, self.settings)
        self.auth = AuthService(self.store, self.sessions, self.passwords, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            session_ttl_days=self.settings.session_ttl_days,
            claim_ttl_seconds=self.settings.claim_ttl_seconds,
        )

    def _build_cache(self) -> ClaimCache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to one event loop
                if self.settings.test_mode:
                    cache = SyncRedisClaimCache(self.settings.redis_url)
                else:
                    cache = RedisClaimCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the shared claim cache; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        # Per-process claims: eviction on role change only reaches this node
        return MemoryClaimCache()

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before creating it.
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
        if runtime is not None:
            if isinstance(runtime.cache, SyncRedisClaimCache):
                runtime.cache.client.close()
            elif isinstance(runtime.cache, RedisClaimCache):
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
