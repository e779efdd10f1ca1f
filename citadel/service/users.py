from __future__ import annotations

import re
import secrets
import unicodedata
from datetime import datetime, timedelta
from typing import Optional, Protocol

from citadel.logging import get_logger
from citadel.service.credentials import hash_password, verify_password
from citadel.service.errors import AuthenticationError, ConflictError, ValidationError
from citadel.storage.errors import ConstraintViolation
from citadel.storage.models import PasswordReset, Session, User, utcnow

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,50}$")
MAX_EMAIL_LENGTH = 254
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MIN_USERNAME_LENGTH = 3
DEFAULT_USERNAME_ATTEMPTS = 5

CONFLICT_MESSAGE = "Unable to create account"
INVALID_LOGIN_MESSAGE = "Invalid email or password"
CURRENT_PASSWORD_MESSAGE = "Current password is incorrect"


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        salt: bytes,
        *,
        first_name: str = "",
        last_name: str = "",
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def touch_last_login(self, user_id: int, when: Optional[datetime] = None) -> None: ...

    def update_password(self, user_id: int, password_hash: str, salt: bytes) -> bool: ...

    def create_session(self, user_id: int, ttl_hours: int = 24) -> Session: ...

    def get_session_user(self, token: str, now: Optional[datetime] = None) -> Optional[User]: ...

    def delete_session(self, token: str) -> None: ...

    def set_session_flash(self, token: str, message: str) -> bool: ...

    def pop_session_flash(self, token: str) -> Optional[str]: ...

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int: ...

    def create_password_reset(self, user_id: int, ttl: timedelta = ...) -> PasswordReset: ...

    def get_valid_password_reset(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[PasswordReset]: ...

    def consume_password_reset(
        self, token: str, password_hash: str, salt: bytes, now: Optional[datetime] = None
    ) -> bool: ...

    def record_reset_attempt(
        self, email: str, ip_address: str, when: Optional[datetime] = None
    ) -> None: ...

    def count_reset_attempts(
        self,
        since: datetime,
        *,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int: ...

    def prune_reset_attempts(self, before: datetime) -> int: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> str:
    """Return the normalized address or raise :class:`ValidationError`."""
    if not email or not email.strip():
        raise ValidationError("email is required", detail={"field": "email"})
    if len(email) > MAX_EMAIL_LENGTH:
        raise ValidationError("email is too long", detail={"field": "email"})
    normalized = normalize_email(email)
    if not EMAIL_PATTERN.match(normalized):
        raise ValidationError("invalid email format", detail={"field": "email"})
    return normalized


def validate_password(password: str) -> None:
    """Require 8-128 characters with upper, lower, digit and special characters."""
    if not password:
        raise ValidationError("password is required", detail={"field": "password"})
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters long",
            detail={"field": "password"},
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be no more than {MAX_PASSWORD_LENGTH} characters long",
            detail={"field": "password"},
        )
    missing = []
    if not any(ch.isupper() for ch in password):
        missing.append("one uppercase letter")
    if not any(ch.islower() for ch in password):
        missing.append("one lowercase letter")
    if not any(ch.isdigit() for ch in password):
        missing.append("one number")
    if not any(unicodedata.category(ch)[0] in {"P", "S"} for ch in password):
        missing.append("one special character")
    if missing:
        raise ValidationError(
            "password must contain at least " + ", ".join(missing),
            detail={"field": "password"},
        )


def validate_username(username: str) -> str:
    username = (username or "").strip()
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(
            "username must be 3-50 characters of letters, numbers, '.', '_' or '-'",
            detail={"field": "username"},
        )
    return username


def _username_base(email: str) -> str:
    local = email.split("@", 1)[0]
    return re.sub(r"[^A-Za-z0-9_.-]", "", local)[:40] or "user"


def _default_username(email: str) -> str:
    """Username derived from the email local part, suffixed when below the minimum length."""
    base = _username_base(email)
    if len(base) < MIN_USERNAME_LENGTH:
        return _with_suffix(base)
    return base


def _with_suffix(base: str) -> str:
    return f"{base}-{secrets.token_hex(3)}"


class UserService:
    """Account registration, password login and password changes."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def register(
        self,
        email: str,
        password: str,
        *,
        username: Optional[str] = None,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        """Create an account.

        A missing username is derived from the email; when that name is
        taken by another account a random suffix is appended, so only a
        duplicate email or an explicitly chosen duplicate username conflicts.
        """
        normalized_email = validate_email(email)
        validate_password(password)
        derived = not username
        if derived:
            username = _default_username(normalized_email)
        else:
            username = validate_username(username)
        digest, salt = hash_password(password)

        attempts = DEFAULT_USERNAME_ATTEMPTS if derived else 1
        for attempt in range(attempts):
            try:
                user = self.store.create_user(
                    username,
                    normalized_email,
                    digest,
                    salt,
                    first_name=(first_name or "").strip(),
                    last_name=(last_name or "").strip(),
                )
            except ConstraintViolation as exc:
                last_attempt = attempt == attempts - 1
                if last_attempt or self.store.get_user_by_email(normalized_email) is not None:
                    logger.info("registration_conflict", detail=exc.detail)
                    raise ConflictError(CONFLICT_MESSAGE) from exc
                username = _with_suffix(_username_base(normalized_email))
                continue
            logger.info("user_registered", user_id=user.id)
            return user

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        """Replace the password of a signed-in user after re-checking the current one."""
        user = self.get(user_id)
        if user is None:
            raise AuthenticationError(INVALID_LOGIN_MESSAGE)
        if not current_password or not verify_password(
            current_password, user.password_hash, user.salt
        ):
            logger.warning("password_change_bad_current", user_id=user.id)
            raise ValidationError(
                CURRENT_PASSWORD_MESSAGE, detail={"field": "current_password"}
            )
        validate_password(new_password)
        if new_password == current_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "new_password"},
            )
        digest, salt = hash_password(new_password)
        if not self.store.update_password(user.id, digest, salt):
            raise AuthenticationError(INVALID_LOGIN_MESSAGE)
        logger.info("password_changed", user_id=user.id)

    def authenticate(self, email: str, password: str) -> User:
        """Return the user for valid credentials; every failure looks the same."""
        if not email or not password:
            raise ValidationError("Email and password are required")
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None:
            logger.warning("login_unknown_email")
            raise AuthenticationError(INVALID_LOGIN_MESSAGE)
        if not verify_password(password, user.password_hash, user.salt):
            logger.warning("login_bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_LOGIN_MESSAGE)
        now = utcnow()
        self.store.touch_last_login(user.id, now)
        user.last_login = now
        return user

    def get(self, user_id) -> Optional[User]:
        try:
            return self.store.get_user(int(user_id))
        except (TypeError, ValueError):
            return None
