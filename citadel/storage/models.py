from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older rows, memory store) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: int
    username: str
    email: str
    password_hash: str
    salt: bytes
    first_name: str = ""
    last_name: str = ""
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_dict(self) -> dict:
        """Client-facing view; hash and salt never leave the server."""
        return {
            "user_id": self.id,
            "username": self.username,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "last_login": self.last_login.isoformat() if self.last_login else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Session:
    token: str
    user_id: int
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    flash: Optional[str] = None

    @classmethod
    def new(cls, user_id: int, ttl_hours: int = 24) -> "Session":
        now = utcnow()
        return cls(
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            expires_at=now + timedelta(hours=ttl_hours),
            created_at=now,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) < as_utc(self.expires_at)


@dataclass
class PasswordReset:
    token: str
    user_id: int
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: int, ttl: timedelta = timedelta(hours=1)) -> "PasswordReset":
        now = utcnow()
        return cls(
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_redeemable(self, now: Optional[datetime] = None) -> bool:
        return not self.used and (now or utcnow()) < as_utc(self.expires_at)


@dataclass
class ResetAttempt:
    email: str
    ip_address: str
    attempted_at: datetime = field(default_factory=utcnow)
