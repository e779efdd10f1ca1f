from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from citadel.config import get_settings, reset_settings_cache
from citadel.logging import get_logger
from citadel.service.email import EmailService
from citadel.service.password_reset import PasswordResetService
from citadel.service.rate_limit import ResetRateLimiter
from citadel.service.sessions import SessionManager
from citadel.service.token_lifecycle import TokenLifecycle
from citadel.service.tokens import TokenConfig, TokenIssuer
from citadel.service.users import UserService
from citadel.storage.memory import MemoryStore
from citadel.storage.postgres import PostgresStore
from citadel.storage.redis_cache import MemoryTokenCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


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
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        self.users = UserService(self.store)
        self.sessions = SessionManager(self.store, self.settings)
        self.issuer = TokenIssuer(
            TokenConfig(
                secret=self.settings.jwt_secret,
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
                access_ttl_seconds=self.settings.access_token_ttl_seconds,
            )
        )
        self.tokens = TokenLifecycle(
            self.issuer,
            self.cache,
            self.users,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.email = EmailService.from_settings(self.settings)
        self.reset_limiter = ResetRateLimiter(
            self.store,
            email_limit=self.settings.reset_email_limit_per_hour,
            ip_limit=self.settings.reset_ip_limit_per_hour,
        )
        self.password_resets = PasswordResetService(
            self.store,
            self.reset_limiter,
            self.email,
            honeypot_delay_seconds=self.settings.honeypot_delay_seconds,
            min_form_seconds=self.settings.reset_min_form_seconds,
            max_form_age_seconds=self.settings.reset_max_form_age_seconds,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            production=self.settings.is_production,
        )

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens and the access-token blacklist; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; refresh tokens and "
                "revocations are held in process memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryTokenCache()

    def sweep(self) -> dict:
        """Periodic maintenance: prune reset attempts, expired sessions and fallback cache keys."""
        removed = {
            "reset_attempts": self.password_resets.prune_attempts(),
            "sessions": self.sessions.purge_expired(),
            "cache_entries": 0,
        }
        # Redis expires keys itself
        if isinstance(self.cache, MemoryTokenCache):
            removed["cache_entries"] = self.cache.purge_expired()
        return removed

    async def close(self) -> None:
        await self.password_resets.drain()
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        # SyncRedisCache wraps a blocking client, close it directly
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.close_sync()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
