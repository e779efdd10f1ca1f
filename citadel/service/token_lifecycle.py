from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

from citadel.logging import get_logger
from citadel.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    ServerError,
    ServiceUnavailableError,
)
from citadel.service.tokens import TokenClaims, TokenIssuer
from citadel.service.users import UserService
from citadel.storage.errors import CacheUnavailableError
from citadel.storage.models import User

logger = get_logger(__name__)

INVALID_REFRESH_MESSAGE = "Invalid or expired refresh token"


class TokenCache(Protocol):
    async def store_refresh(self, token_id: str, user_id, ttl_seconds: int) -> None: ...

    async def get_refresh(self, token_id: str) -> Optional[str]: ...

    async def delete_refresh(self, token_id: str, user_id) -> None: ...

    async def delete_all_refresh(self, user_id) -> int: ...

    async def blacklist(self, jti: str, ttl_ms: int) -> None: ...

    async def is_blacklisted(self, jti: str) -> bool: ...


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    user: User
    expires_in: int
    token_type: str = "Bearer"


class TokenLifecycle:
    """Refresh-token issuance, rotation and logout revocation.

    Cache outages fail closed: callers see :class:`ServiceUnavailableError`
    rather than a token that silently skipped revocation.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        cache: TokenCache,
        users: UserService,
        *,
        refresh_ttl_seconds: int = 24 * 60 * 60,
    ) -> None:
        self.issuer = issuer
        self.cache = cache
        self.users = users
        self.refresh_ttl_seconds = refresh_ttl_seconds

    def _access_token(self, user: User) -> str:
        return self.issuer.issue_access_token(user.id, user.email, user.username)

    async def issue_pair(self, user: User) -> AuthTokens:
        access_token = self._access_token(user)
        refresh_token = str(uuid.uuid4())
        try:
            await self.cache.store_refresh(refresh_token, user.id, self.refresh_ttl_seconds)
        except CacheUnavailableError as exc:
            logger.error("refresh_token_store_failed", user_id=user.id, error=str(exc))
            raise ServiceUnavailableError() from exc
        return AuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            user=user,
            expires_in=self.issuer.config.access_ttl_seconds,
        )

    async def rotate(self, refresh_token: str) -> AuthTokens:
        """Exchange a refresh token for a new access/refresh pair.

        The old entry is deleted before the new one is stored. Deletion
        failures are tolerated; a failed store is not. Two concurrent
        rotations of the same token can both succeed.
        """
        if not refresh_token:
            raise AuthenticationError(INVALID_REFRESH_MESSAGE)
        try:
            user_id = await self.cache.get_refresh(refresh_token)
        except CacheUnavailableError as exc:
            logger.error("refresh_token_lookup_failed", error=str(exc))
            raise ServiceUnavailableError() from exc
        if user_id is None:
            logger.warning("refresh_token_unknown")
            raise AuthenticationError(INVALID_REFRESH_MESSAGE)

        user = self.users.get(user_id)
        if user is None:
            logger.warning("refresh_token_orphaned", user_id=user_id)
            raise AuthenticationError(INVALID_REFRESH_MESSAGE)

        access_token = self._access_token(user)
        new_refresh_token = str(uuid.uuid4())

        try:
            await self.cache.delete_refresh(refresh_token, user.id)
        except CacheUnavailableError as exc:
            logger.error("refresh_token_delete_failed", user_id=user.id, error=str(exc))

        try:
            await self.cache.store_refresh(new_refresh_token, user.id, self.refresh_ttl_seconds)
        except CacheUnavailableError as exc:
            logger.error("refresh_token_store_failed", user_id=user.id, error=str(exc))
            raise ServerError("Failed to rotate refresh token") from exc

        logger.info("token_refreshed", user_id=user.id)
        return AuthTokens(
            access_token=access_token,
            refresh_token=new_refresh_token,
            user=user,
            expires_in=self.issuer.config.access_ttl_seconds,
        )

    async def revoke(self, claims: TokenClaims) -> None:
        """Blacklist the access token for its remaining life, then drop every refresh token."""
        ttl_ms = claims.remaining_ms(self.issuer.now())
        try:
            if ttl_ms > 0:
                await self.cache.blacklist(claims.jti, ttl_ms)
            revoked = await self.cache.delete_all_refresh(claims.user_id)
        except CacheUnavailableError as exc:
            logger.error("logout_revocation_failed", user_id=claims.user_id, error=str(exc))
            raise ServiceUnavailableError() from exc
        logger.info("user_logged_out", user_id=claims.user_id, refresh_revoked=revoked)

    async def ensure_not_revoked(self, claims: TokenClaims) -> None:
        try:
            revoked = await self.cache.is_blacklisted(claims.jti)
        except CacheUnavailableError as exc:
            logger.error("blacklist_check_failed", error=str(exc))
            raise ServiceUnavailableError() from exc
        if revoked:
            logger.info("blacklisted_token_presented", user_id=claims.user_id)
            raise InvalidTokenError()

    async def authenticate(self, token: str) -> TokenClaims:
        """Validate a bearer token and confirm it has not been revoked."""
        claims = self.issuer.validate(token)
        await self.ensure_not_revoked(claims)
        return claims
