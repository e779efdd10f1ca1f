"""Resolved caller identity.

A request is authenticated either by a cookie session or by a bearer token.
Both resolve to an :data:`Identity`, so handlers branch on one type instead of
probing two unrelated shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

from citadel.service.tokens import TokenClaims
from citadel.storage.models import User


@dataclass(frozen=True)
class SessionUser:
    user: User
    session_token: str
    kind: Literal["session"] = "session"

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def email(self) -> str:
        return self.user.email

    @property
    def username(self) -> str:
        return self.user.username


@dataclass(frozen=True)
class TokenIdentity:
    claims: TokenClaims
    kind: Literal["token"] = "token"

    @property
    def user_id(self) -> int:
        return self.claims.user_id

    @property
    def email(self) -> str:
        return self.claims.email

    @property
    def username(self) -> str:
        return self.claims.username


Identity = Union[SessionUser, TokenIdentity]

__all__ = ["Identity", "SessionUser", "TokenIdentity"]
