from __future__ import annotations

import hmac
import secrets
from typing import Optional

from fastapi import Request, Response

from citadel.config import Settings
from citadel.service.sessions import cookie_policy

CSRF_COOKIE = "csrf_token"
CSRF_FORM_FIELD = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"
CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def new_token() -> str:
    return secrets.token_urlsafe(32)


def set_csrf_cookie(response: Response, token: str, settings: Settings) -> None:
    # Readable by page script, so not HttpOnly
    response.set_cookie(
        CSRF_COOKIE,
        token,
        path="/",
        httponly=False,
        **cookie_policy(settings),
    )


def tokens_match(cookie_value: Optional[str], submitted: Optional[str]) -> bool:
    if not cookie_value or not submitted:
        return False
    if len(cookie_value) != len(submitted):
        return False
    return hmac.compare_digest(cookie_value.encode(), submitted.encode())


async def extract_submitted_token(request: Request) -> Optional[str]:
    header_token = request.headers.get(CSRF_HEADER)
    if header_token:
        return header_token
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(_FORM_CONTENT_TYPES):
        # Buffer the body first so it is replayed to the route after the middleware
        await request.body()
        form = await request.form()
        value = form.get(CSRF_FORM_FIELD)
        return value if isinstance(value, str) else None
    return None


def is_exempt(request: Request) -> bool:
    """Safe methods and bearer-authenticated requests carry no CSRF risk."""
    if request.method.upper() in CSRF_SAFE_METHODS:
        return True
    return bool(request.headers.get("Authorization"))
