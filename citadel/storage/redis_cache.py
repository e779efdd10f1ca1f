from __future__ import annotations

import functools
import threading
import time
from typing import Callable, Dict, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from citadel.storage.errors import CacheUnavailableError

# The per-user token set always lives for the refresh window, regardless of
# which token TTL triggered the refresh.
USER_TOKENS_TTL_SECONDS = 24 * 60 * 60


def refresh_key(token_id: str) -> str:
    return f"refresh:{token_id}"


def user_tokens_key(user_id) -> str:
    return f"user_tokens:{user_id}"


def blacklist_key(jti: str) -> str:
    return f"blacklist:{jti}"


def _cache_op(operation: str):
    """Translate backend failures into :class:`CacheUnavailableError`."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except (RedisError, OSError) as exc:
                raise CacheUnavailableError(operation, exc) from exc

        return wrapper

    return decorator


class RedisCache:
    """Refresh-token and access-token blacklist storage on Redis."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary
        # event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_cache_op("store_refresh")
    async def store_refresh(self, token_id: str, user_id, ttl_seconds: int) -> None:
        # Pipelined, not MULTI/EXEC: consistency across the three writes is best-effort
        pipe = self.client.pipeline(transaction=False)
        pipe.set(refresh_key(token_id), str(user_id), ex=ttl_seconds)
        pipe.sadd(user_tokens_key(user_id), token_id)
        pipe.expire(user_tokens_key(user_id), USER_TOKENS_TTL_SECONDS)
        await pipe.execute()

    @_cache_op("get_refresh")
    async def get_refresh(self, token_id: str) -> Optional[str]:
        return await self.client.get(refresh_key(token_id))

    @_cache_op("delete_refresh")
    async def delete_refresh(self, token_id: str, user_id) -> None:
        await self.client.delete(refresh_key(token_id))
        await self.client.srem(user_tokens_key(user_id), token_id)

    @_cache_op("delete_all_refresh")
    async def delete_all_refresh(self, user_id) -> int:
        token_ids = await self.client.smembers(user_tokens_key(user_id))
        for token_id in token_ids:
            await self.client.delete(refresh_key(token_id))
        await self.client.delete(user_tokens_key(user_id))
        return len(token_ids)

    @_cache_op("blacklist")
    async def blacklist(self, jti: str, ttl_ms: int) -> None:
        """Deny an access token for the rest of its lifetime, never longer."""
        if ttl_ms > 0:
            await self.client.set(blacklist_key(jti), "1", px=ttl_ms)

    @_cache_op("is_blacklisted")
    async def is_blacklisted(self, jti: str) -> bool:
        return bool(await self.client.exists(blacklist_key(jti)))

    @_cache_op("blacklist_ttl")
    async def blacklist_ttl(self, jti: str) -> Optional[int]:
        ttl = await self.client.ttl(blacklist_key(jti))
        return ttl if ttl is not None and ttl >= 0 else None

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Redis wrapper with a synchronous client for tests.

    Exposes the same awaitable interface as :class:`RedisCache` but performs
    blocking calls, so the cache can be shared across the event loops that
    ``TestClient`` and ``asyncio.run`` create.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    @_cache_op("store_refresh")
    async def store_refresh(self, token_id: str, user_id, ttl_seconds: int) -> None:
        pipe = self._sync_client.pipeline(transaction=False)
        pipe.set(refresh_key(token_id), str(user_id), ex=ttl_seconds)
        pipe.sadd(user_tokens_key(user_id), token_id)
        pipe.expire(user_tokens_key(user_id), USER_TOKENS_TTL_SECONDS)
        pipe.execute()

    @_cache_op("get_refresh")
    async def get_refresh(self, token_id: str) -> Optional[str]:
        return self._sync_client.get(refresh_key(token_id))

    @_cache_op("delete_refresh")
    async def delete_refresh(self, token_id: str, user_id) -> None:
        self._sync_client.delete(refresh_key(token_id))
        self._sync_client.srem(user_tokens_key(user_id), token_id)

    @_cache_op("delete_all_refresh")
    async def delete_all_refresh(self, user_id) -> int:
        token_ids = self._sync_client.smembers(user_tokens_key(user_id))
        for token_id in token_ids:
            self._sync_client.delete(refresh_key(token_id))
        self._sync_client.delete(user_tokens_key(user_id))
        return len(token_ids)

    @_cache_op("blacklist")
    async def blacklist(self, jti: str, ttl_ms: int) -> None:
        if ttl_ms > 0:
            self._sync_client.set(blacklist_key(jti), "1", px=ttl_ms)

    @_cache_op("is_blacklisted")
    async def is_blacklisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(blacklist_key(jti)))

    @_cache_op("blacklist_ttl")
    async def blacklist_ttl(self, jti: str) -> Optional[int]:
        ttl = self._sync_client.ttl(blacklist_key(jti))
        return ttl if ttl is not None and ttl >= 0 else None

    def close_sync(self) -> None:
        self._sync_client.close()

    async def close(self) -> None:
        self.close_sync()


class MemoryTokenCache:
    """In-process stand-in for Redis when it is unavailable in test/dev mode.

    Keys expire lazily on access using ``clock`` (monotonic seconds), which
    tests can replace to move time forward.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sets: Dict[str, Tuple[Set[str], Optional[float]]] = {}
        self._lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def _deadline(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    def _alive(self, deadline: Optional[float]) -> bool:
        return deadline is None or self._clock() < deadline

    def _get(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if not self._alive(deadline):
            del self._values[key]
            return None
        return value

    def _members(self, key: str) -> Set[str]:
        entry = self._sets.get(key)
        if entry is None:
            return set()
        members, deadline = entry
        if not self._alive(deadline):
            del self._sets[key]
            return set()
        return members

    async def store_refresh(self, token_id: str, user_id, ttl_seconds: int) -> None:
        with self._lock:
            self._values[refresh_key(token_id)] = (str(user_id), self._deadline(ttl_seconds))
            key = user_tokens_key(user_id)
            members = self._members(key)
            members.add(token_id)
            self._sets[key] = (members, self._deadline(USER_TOKENS_TTL_SECONDS))

    async def get_refresh(self, token_id: str) -> Optional[str]:
        with self._lock:
            return self._get(refresh_key(token_id))

    async def delete_refresh(self, token_id: str, user_id) -> None:
        with self._lock:
            self._values.pop(refresh_key(token_id), None)
            self._members(user_tokens_key(user_id)).discard(token_id)

    async def delete_all_refresh(self, user_id) -> int:
        with self._lock:
            token_ids = self._members(user_tokens_key(user_id))
            for token_id in token_ids:
                self._values.pop(refresh_key(token_id), None)
            self._sets.pop(user_tokens_key(user_id), None)
            return len(token_ids)

    async def blacklist(self, jti: str, ttl_ms: int) -> None:
        if ttl_ms > 0:
            with self._lock:
                self._values[blacklist_key(jti)] = ("1", self._clock() + ttl_ms / 1000)

    async def is_blacklisted(self, jti: str) -> bool:
        with self._lock:
            return self._get(blacklist_key(jti)) is not None

    async def blacklist_ttl(self, jti: str) -> Optional[int]:
        with self._lock:
            if self._get(blacklist_key(jti)) is None:
                return None
            deadline = self._values[blacklist_key(jti)][1]
            if deadline is None:
                return None
            return max(0, int(round(deadline - self._clock())))

    def purge_expired(self) -> int:
        """Drop every expired key; returns how many were removed."""
        with self._lock:
            dead = [key for key, (_, deadline) in self._values.items() if not self._alive(deadline)]
            dead_sets = [key for key, (_, deadline) in self._sets.items() if not self._alive(deadline)]
            for key in dead:
                del self._values[key]
            for key in dead_sets:
                del self._sets[key]
            return len(dead) + len(dead_sets)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()


__all__ = [
    "MemoryTokenCache",
    "RedisCache",
    "SyncRedisCache",
    "blacklist_key",
    "refresh_key",
    "user_tokens_key",
]
