from __future__ import annotations

from typing import Optional

from fastapi import Response

from citadel.config import Settings
from citadel.logging import get_logger
from citadel.service.users import AuthStore
from citadel.storage.models import User

logger = get_logger(__name__)

SESSION_COOKIE = "session_token"


def cookie_policy(settings: Settings) -> dict:
    """Secure/SameSite attributes shared by the session and CSRF cookies.

    Production deployments (APP_ENV/GO_ENV of production or prod, or
    TLS_ENABLED) get ``Secure`` and ``SameSite=Strict``; local development
    runs over plain HTTP with ``SameSite=Lax``.
    """
    if settings.is_production:
        return {"secure": True, "samesite": "strict"}
    return {"secure": False, "samesite": "lax"}


class SessionManager:
    """Opaque cookie sessions stored in the relational store, with flash messages."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def create(self, user_id: int) -> str:
        sess = self.store.create_session(user_id, ttl_hours=self.settings.session_ttl_hours)
        logger.info("session_created", user_id=user_id)
        return sess.token

    def resolve(self, token: Optional[str]) -> Optional[User]:
        """Return the session's user, or None for absent and expired sessions alike."""
        if not token:
            return None
        return self.store.get_session_user(token)

    def destroy(self, token: Optional[str]) -> None:
        if token:
            self.store.delete_session(token)

    def set_flash(self, token: str, message: str) -> None:
        if not self.store.set_session_flash(token, message):
            logger.debug("flash_dropped_no_session")

    def take_flash(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        return self.store.pop_session_flash(token)

    def purge_expired(self) -> int:
        return self.store.purge_expired_sessions()

    def set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            SESSION_COOKIE,
            token,
            max_age=self.settings.session_ttl_hours * 60 * 60,
            path="/",
            httponly=True,
            **cookie_policy(self.settings),
        )

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(
            SESSION_COOKIE, path="/", httponly=True, **cookie_policy(self.settings)
        )
