from __future__ import annotations

import asyncio
import ipaddress
import json

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from fastapi.responses import StreamingResponse

from citadel.api.auth import require_stream_identity, require_token_identity
from citadel.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserOut,
)
from citadel.config import get_settings
from citadel.logging import get_logger
from citadel.service.errors import ValidationError
from citadel.service.identity import TokenIdentity
from citadel.service.runtime import get_runtime
from citadel.service.token_lifecycle import AuthTokens

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

PASSWORD_MISMATCH_MESSAGE = "Passwords do not match"
RESET_SUCCESS_MESSAGE = "Password reset successfully"
CHANGE_SUCCESS_MESSAGE = "Password changed successfully"


def _is_trusted_proxy(peer: str, trusted: list[str]) -> bool:
    for entry in trusted:
        if entry == peer:
            return True
        try:
            if ipaddress.ip_address(peer) in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def client_ip(request: Request) -> str:
    """Client address used for rate limiting and request logs.

    ``X-Forwarded-For`` (first entry) and ``X-Real-IP`` are only believed when
    the socket peer is one of ``TRUSTED_PROXIES``; anyone else could rotate
    them freely.
    """
    peer = request.client.host if request.client and request.client.host else None
    if peer and _is_trusted_proxy(peer, get_settings().trusted_proxies):
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("X-Real-IP")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return peer or "unknown"


def _auth_response(tokens: AuthTokens) -> AuthResponse:
    return AuthResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        user=UserOut(**tokens.user.public_dict()),
    )


@router.post("/auth/register", response_model=AuthResponse, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and return a fresh token pair.

    Raises:
        400: invalid email, username or weak password
        409: email or username already taken
        503: token cache unavailable
    """
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.users.register,
        body.email,
        body.password,
        username=body.username,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    tokens = await runtime.tokens.issue_pair(user)
    return _auth_response(tokens)


@router.post("/auth/login", response_model=AuthResponse, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for a token pair.

    Raises:
        401: unknown email or wrong password (indistinguishable)
        503: token cache unavailable
    """
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.users.authenticate, body.email, body.password)
    tokens = await runtime.tokens.issue_pair(user)
    logger.info("user_logged_in", user_id=user.id, channel="api")
    return _auth_response(tokens)


@router.post("/auth/refresh", response_model=AuthResponse, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.tokens.rotate(body.refresh_token)
    return _auth_response(tokens)


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(identity: TokenIdentity = Depends(require_token_identity)):
    """Revoke the presented access token and every refresh token of its user."""
    runtime = get_runtime()
    await runtime.tokens.revoke(identity.claims)
    return Response(status_code=204)


@router.get("/me", response_model=MeResponse, tags=["auth"])
async def me(identity: TokenIdentity = Depends(require_token_identity)):
    return MeResponse(
        user_id=identity.user_id,
        email=identity.email,
        username=identity.username,
    )


@router.post("/auth/password/forgot", response_model=MessageResponse, tags=["password"])
async def forgot_password(
    body: ForgotPasswordRequest, request: Request, background_tasks: BackgroundTasks
):
    """Start a password reset.

    The answer is the same whether or not the account exists. Only a stale
    form (400) and rate limiting (429) are reported differently.
    """
    runtime = get_runtime()
    result = await runtime.password_resets.request_reset(
        body.email,
        client_ip(request),
        honeypot=body.website,
        render_time=body.render_time,
        schedule=background_tasks.add_task,
    )
    return MessageResponse(message=result.message)


@router.post("/auth/password/reset", response_model=MessageResponse, tags=["password"])
async def reset_password(body: ResetPasswordRequest):
    if body.password != body.confirm_password:
        raise ValidationError(PASSWORD_MISMATCH_MESSAGE, detail={"field": "confirm_password"})
    runtime = get_runtime()
    await asyncio.to_thread(runtime.password_resets.reset_password, body.token, body.password)
    return MessageResponse(message=RESET_SUCCESS_MESSAGE)


@router.post("/auth/password/change", response_model=MessageResponse, tags=["password"])
async def change_password(
    body: ChangePasswordRequest, identity: TokenIdentity = Depends(require_token_identity)
):
    """Change the caller's password.

    Raises:
        400: wrong current password, weak or mismatched new password
        401: missing or invalid bearer token
    """
    if body.new_password != body.confirm_password:
        raise ValidationError(PASSWORD_MISMATCH_MESSAGE, detail={"field": "confirm_password"})
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.users.change_password,
        identity.user_id,
        body.current_password,
        body.new_password,
    )
    return MessageResponse(message=CHANGE_SUCCESS_MESSAGE)


@router.get("/me/events", tags=["auth"])
async def me_events(identity: TokenIdentity = Depends(require_stream_identity)):
    """Server-sent identity event for EventSource clients.

    EventSource cannot send an ``Authorization`` header, so this route is the
    one place a ``?token=`` query parameter is accepted.
    """
    payload = {
        "user_id": identity.user_id,
        "email": identity.email,
        "username": identity.username,
        "expires_at": identity.claims.expires_at,
    }

    async def stream():
        yield f"event: identity\ndata: {json.dumps(payload)}\n\n"

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-store", "X-Accel-Buffering": "no"},
    )
