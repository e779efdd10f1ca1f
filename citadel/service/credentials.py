"""Password hashing and verification.

scrypt with N=2**15, r=8, p=1 and a 32-byte key, the OWASP-recommended
minimum at the time these parameters were chosen. Changing any of them
invalidates every stored digest.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Optional, Tuple

from citadel.logging import get_logger
from citadel.service.errors import CredentialError

logger = get_logger(__name__)

SCRYPT_N = 2**15
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LENGTH = 32
SALT_LENGTH = 32

# OpenSSL's default 32 MiB cap is exactly 128 * N * r; leave headroom.
_SCRYPT_MAXMEM = 2 * 128 * SCRYPT_N * SCRYPT_R


def _derive(password: str, salt: bytes) -> bytes:
    try:
        return hashlib.scrypt(
            password.encode("utf-8"),
            salt=salt,
            n=SCRYPT_N,
            r=SCRYPT_R,
            p=SCRYPT_P,
            maxmem=_SCRYPT_MAXMEM,
            dklen=KEY_LENGTH,
        )
    except (ValueError, MemoryError) as exc:
        logger.error("password_kdf_failed", error=str(exc))
        raise CredentialError("password hashing failed") from exc


def hash_password(password: str, salt: Optional[bytes] = None) -> Tuple[str, bytes]:
    """Return ``(base64 digest, salt)``; a fresh 32-byte salt is drawn when none is given."""
    if salt is None:
        salt = secrets.token_bytes(SALT_LENGTH)
    digest = _derive(password, salt)
    return base64.b64encode(digest).decode("ascii"), salt


def verify_password(password: str, digest: str, salt: bytes) -> bool:
    """Recompute the digest and compare in constant time.

    Raises :class:`CredentialError` when the KDF itself fails.
    """
    candidate, _ = hash_password(password, salt)
    return hmac.compare_digest(candidate.encode("ascii"), digest.encode("ascii"))
