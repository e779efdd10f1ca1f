from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from citadel.logging import get_logger
from citadel.storage.errors import ConstraintViolation
from citadel.storage.models import (
    PasswordReset,
    ResetAttempt,
    Session,
    User,
    as_utc,
    utcnow,
)


class MemoryStore:
    """In-process store used by tests and local development.

    Mirrors the query semantics of :class:`PostgresStore`: expired sessions are
    invisible, reset consumption is all-or-nothing, and returned records are
    copies so callers cannot mutate shared state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.password_resets: Dict[str, PasswordReset] = {}
        self.reset_attempts: List[ResetAttempt] = []
        self._user_ids = itertools.count(1)
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        salt: bytes,
        *,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("account already exists", {"field": "account"})
                if existing.username == username:
                    raise ConstraintViolation("account already exists", {"field": "account"})
            now = utcnow()
            user = User(
                id=next(self._user_ids),
                username=username,
                email=email,
                password_hash=password_hash,
                salt=salt,
                first_name=first_name,
                last_name=last_name,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
        return None

    def touch_last_login(self, user_id: int, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login = when or utcnow()

    def update_password(self, user_id: int, password_hash: str, salt: bytes) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return False
            user.password_hash = password_hash
            user.salt = salt
            user.updated_at = utcnow()
            return True

    # -- sessions ------------------------------------------------------------

    def create_session(self, user_id: int, ttl_hours: int = 24) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            sess = Session.new(user_id, ttl_hours=ttl_hours)
            self.sessions[sess.token] = sess
            return replace(sess)

    def _active_session(self, token: str, now: Optional[datetime]) -> Optional[Session]:
        sess = self.sessions.get(token)
        if sess is None or not sess.is_active(now):
            return None
        return sess

    def get_session_user(self, token: str, now: Optional[datetime] = None) -> Optional[User]:
        with self._data_lock:
            sess = self._active_session(token, now)
            if sess is None:
                return None
            user = self.users.get(sess.user_id)
            return replace(user) if user else None

    def delete_session(self, token: str) -> None:
        with self._data_lock:
            self.sessions.pop(token, None)

    def set_session_flash(self, token: str, message: str) -> bool:
        with self._data_lock:
            sess = self._active_session(token, None)
            if sess is None:
                return False
            sess.flash = message
            return True

    def pop_session_flash(self, token: str) -> Optional[str]:
        with self._data_lock:
            sess = self._active_session(token, None)
            if sess is None:
                return None
            message, sess.flash = sess.flash, None
            return message

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [t for t, s in self.sessions.items() if not s.is_active(now)]
            for token in stale:
                del self.sessions[token]
            return len(stale)

    # -- password resets -----------------------------------------------------

    def create_password_reset(
        self, user_id: int, ttl: timedelta = timedelta(hours=1)
    ) -> PasswordReset:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            reset = PasswordReset.new(user_id, ttl=ttl)
            self.password_resets[reset.token] = reset
            return replace(reset)

    def get_valid_password_reset(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[PasswordReset]:
        with self._data_lock:
            reset = self.password_resets.get(token)
            if reset is None or not reset.is_redeemable(now):
                return None
            return replace(reset)

    def consume_password_reset(
        self,
        token: str,
        password_hash: str,
        salt: bytes,
        now: Optional[datetime] = None,
    ) -> bool:
        """Apply a new password and mark the reset used, or change nothing."""
        now = now or utcnow()
        with self._data_lock:
            reset = self.password_resets.get(token)
            if reset is None or not reset.is_redeemable(now):
                return False
            user = self.users.get(reset.user_id)
            if user is None:
                return False
            user.password_hash = password_hash
            user.salt = salt
            user.updated_at = now
            reset.used = True
            return True

    # -- reset attempts ------------------------------------------------------

    def record_reset_attempt(
        self, email: str, ip_address: str, when: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            self.reset_attempts.append(
                ResetAttempt(email=email, ip_address=ip_address, attempted_at=when or utcnow())
            )

    def count_reset_attempts(
        self,
        since: datetime,
        *,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for attempt in self.reset_attempts
                if as_utc(attempt.attempted_at) > since
                and (email is None or attempt.email == email)
                and (ip_address is None or attempt.ip_address == ip_address)
            )

    def prune_reset_attempts(self, before: datetime) -> int:
        with self._data_lock:
            kept = [a for a in self.reset_attempts if as_utc(a.attempted_at) >= before]
            removed = len(self.reset_attempts) - len(kept)
            self.reset_attempts = kept
            return removed

    # -- lifecycle -----------------------------------------------------------

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
