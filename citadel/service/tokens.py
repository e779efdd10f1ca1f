from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from citadel.logging import get_logger
from citadel.service.errors import InvalidTokenError

logger = get_logger(__name__)

ALGORITHM = "HS256"
_HEADER = {"alg": ALGORITHM, "typ": "JWT"}
_REQUIRED_CLAIMS = ("user_id", "jti", "iss", "aud", "iat", "nbf", "exp")


@dataclass(frozen=True)
class TokenConfig:
    secret: str
    issuer: str = "citadel"
    audience: str = "citadel-api"
    access_ttl_seconds: int = 300

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("token signing secret must not be empty")
        if self.access_ttl_seconds <= 0:
            raise ValueError("access token TTL must be positive")


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    username: str
    email: str
    jti: str
    issuer: str
    audience: str
    issued_at: int
    not_before: int
    expires_at: int

    def remaining_ms(self, now: Optional[float] = None) -> int:
        """Milliseconds until expiry, rounded down so a deny-list entry never outlives the token."""
        current = time.time() if now is None else now
        return max(0, int((self.expires_at - current) * 1000))


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Signs and validates short-lived HS256 access tokens.

    Validation is stateless: revocation (the blacklist) is checked by the
    caller. All validation failures raise the same :class:`InvalidTokenError`
    so clients cannot tell a bad signature from an expired token.
    """

    def __init__(self, config: TokenConfig, *, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.config.secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def issue_access_token(self, user_id: int, email: str, username: str) -> str:
        now = int(self._clock())
        payload = {
            "user_id": user_id,
            "username": username,
            "email": email,
            "jti": secrets.token_urlsafe(16),
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "iat": now,
            "nbf": now,
            "exp": now + self.config.access_ttl_seconds,
        }
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def validate(self, token: str) -> TokenClaims:
        payload = self._decode(token)
        if payload is None:
            raise InvalidTokenError()
        return TokenClaims(
            user_id=payload["user_id"],
            username=str(payload.get("username") or ""),
            email=str(payload.get("email") or ""),
            jti=str(payload["jti"]),
            issuer=payload["iss"],
            audience=self.config.audience,
            issued_at=int(payload["iat"]),
            not_before=int(payload["nbf"]),
            expires_at=int(payload["exp"]),
        )

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm; "none" and asymmetric algs are rejected outright
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            return None

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if any(payload.get(claim) in (None, "") for claim in _REQUIRED_CLAIMS):
            return None
        if payload.get("iss") != self.config.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.config.audience
        elif isinstance(aud, list):
            valid_aud = self.config.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            nbf = float(payload["nbf"])
            exp = float(payload["exp"])
        except (TypeError, ValueError):
            return None
        now = self._clock()
        if now < nbf or now >= exp:
            return None
        return payload
