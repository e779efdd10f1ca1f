"""Caller identity resolution for routes and pages.

Bearer tokens are checked first, then the ``session_token`` cookie. The
resolved :data:`Identity` is kept on ``request.state`` and read back through
:func:`current_identity`.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from citadel.logging import get_logger
from citadel.service.errors import AuthenticationError, InvalidTokenError
from citadel.service.identity import Identity, SessionUser, TokenIdentity
from citadel.service.runtime import get_runtime
from citadel.service.sessions import SESSION_COOKIE

logger = get_logger(__name__)

_IDENTITY_ATTR = "_citadel_identity"


class LoginRedirect(Exception):
    """Raised by cookie-authenticated pages; rendered as a 303 to the login page."""

    def __init__(self, location: str = "/login") -> None:
        super().__init__(location)
        self.location = location


def current_identity(request: Request) -> Optional[Identity]:
    return getattr(request.state, _IDENTITY_ATTR, None)


def _attach(request: Request, identity: Optional[Identity]) -> Optional[Identity]:
    if identity is not None:
        setattr(request.state, _IDENTITY_ATTR, identity)
    return identity


def _bearer_token(request: Request, *, allow_query: bool = False) -> Optional[str]:
    """Return the presented bearer token.

    ``None`` means no token was presented at all; an empty string means an
    ``Authorization`` header was sent but is not a usable bearer credential.
    ``?token=`` is read only when ``allow_query`` is set, for streaming
    routes whose EventSource clients cannot send headers.
    """
    header = request.headers.get("Authorization")
    if header is not None:
        scheme, _, credentials = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return ""
        return credentials.strip()
    if allow_query:
        return request.query_params.get("token") or None
    return None


async def _token_identity(token: str) -> TokenIdentity:
    if not token:
        raise InvalidTokenError()
    claims = await get_runtime().tokens.authenticate(token)
    return TokenIdentity(claims)


def _session_identity(request: Request) -> Optional[SessionUser]:
    session_token = request.cookies.get(SESSION_COOKIE)
    user = get_runtime().sessions.resolve(session_token)
    if user is None:
        return None
    return SessionUser(user=user, session_token=session_token)


async def resolve_identity(request: Request) -> Optional[Identity]:
    """Resolve whoever is calling, or ``None``.

    Token failures collapse to ``None``; cache outages still propagate as 503.
    """
    token = _bearer_token(request)
    if token is not None:
        try:
            return _attach(request, await _token_identity(token))
        except AuthenticationError:
            logger.debug("optional_bearer_rejected")
            return None
    return _attach(request, _session_identity(request))


async def optional_identity(request: Request) -> Optional[Identity]:
    return await resolve_identity(request)


async def _require_bearer(request: Request, *, allow_query: bool) -> TokenIdentity:
    token = _bearer_token(request, allow_query=allow_query)
    try:
        identity = await _token_identity(token or "")
    except AuthenticationError as exc:
        # one message for every failure mode
        raise InvalidTokenError() from exc
    _attach(request, identity)
    return identity


async def require_token_identity(request: Request) -> TokenIdentity:
    return await _require_bearer(request, allow_query=False)


async def require_stream_identity(request: Request) -> TokenIdentity:
    """Like :func:`require_token_identity` but also accepts ``?token=``."""
    return await _require_bearer(request, allow_query=True)


async def require_session_user(request: Request) -> SessionUser:
    identity = _session_identity(request)
    if identity is None:
        raise LoginRedirect()
    _attach(request, identity)
    return identity


__all__ = [
    "LoginRedirect",
    "current_identity",
    "optional_identity",
    "require_session_user",
    "require_stream_identity",
    "require_token_identity",
    "resolve_identity",
]
