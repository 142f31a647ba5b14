from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from authkernel.config import Settings, get_settings
from authkernel.logging import get_logger
from authkernel.service.errors import ConfigurationError
from authkernel.service.passwords import SecretHasher
from authkernel.service.rate_limit import (
    MemoryCounterBackend,
    RateLimiter,
    default_rules,
)
from authkernel.service.sessions import CredentialStore, SessionService
from authkernel.service.tokens import TokenService
from authkernel.storage.memory import MemoryStore
from authkernel.storage.models import utcnow
from authkernel.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

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
    return urlunparse((
        parsed.scheme,
        netloc,
        parsed.path,
        parsed.params,
        parsed.query,
        parsed.fragment,
    ))


def _build_store(settings: Settings, clock: Callable[[], datetime]) -> CredentialStore:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: CredentialStore = MemoryStore(clock=clock)
        else:
            # Imported lazily so memory-only deployments need no libpq
            from authkernel.storage.postgres import PostgresStore

            store = PostgresStore(settings.database_url, clock=clock)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


def _build_cache(settings: Settings):
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            # Sync client in test mode avoids binding to the pytest event loop
            cache = (
                SyncRedisCache(settings.redis_url)
                if settings.test_mode
                else RedisCache(settings.redis_url)
            )
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise ConfigurationError(
            "Redis is required for shared rate limits; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=f"Running without Redis under {fallback_mode}; rate limits are per-process only.",
        mode=fallback_mode,
    )
    return None


class Runtime:
    """Explicit container for the services one app instance uses.

    Collaborators (store, cache, clock) can be injected; anything left out
    is built from ``settings``. Construction fails with
    ``ConfigurationError`` before any request is served when signing
    secrets are missing or weak.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[CredentialStore] = None,
        cache=None,
        use_cache: bool = True,
        clock: Callable[[], datetime] = utcnow,
        hasher: Optional[SecretHasher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.settings.require_signing_secrets()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store = store if store is not None else _build_store(self.settings, clock)
        if cache is None and use_cache:
            cache = _build_cache(self.settings)
        self.cache = cache

        self.hasher = hasher or SecretHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.tokens = TokenService(
            access_secret=self.settings.jwt_secret,
            refresh_secret=self.settings.refresh_token_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_token_ttl=self.settings.access_token_ttl,
            refresh_token_ttl=self.settings.refresh_token_ttl,
            clock=clock,
        )
        self.sessions = SessionService(
            self.store, self.tokens, self.hasher, clock=clock
        )
        counter_backend = self.cache or MemoryCounterBackend(clock=clock)
        self.rate_limiter = RateLimiter(counter_backend, default_rules(self.settings))

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            access_token_ttl_seconds=self.tokens.access_token_ttl_seconds,
            rate_limit_rules=sorted(self.rate_limiter.rules),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()
