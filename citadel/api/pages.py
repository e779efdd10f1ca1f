"""Server-rendered HTML pages for browser sign-in and password recovery.

Every form render mints a new CSRF token and sets the matching cookie. The
double-submit check itself happens in the app middleware for every path in
:data:`FORM_PATHS`.
"""

from __future__ import annotations

import asyncio
from html import escape
from typing import Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Form, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from citadel.api.auth import optional_identity, require_session_user
from citadel.api.routes import PASSWORD_MISMATCH_MESSAGE, client_ip
from citadel.logging import get_logger
from citadel.service import csrf
from citadel.service.errors import ServiceError
from citadel.service.identity import Identity, SessionUser
from citadel.service.password_reset import encode_render_time
from citadel.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(include_in_schema=False)

FORM_PATHS = frozenset(
    {"/register", "/login", "/logout", "/forgot-password", "/reset-password"}
)

REGISTER_FLASH = "Registration successful!"
LOGIN_FLASH = "Login successful!"

_HIDDEN_FIELD = '<input type="hidden" name="{name}" value="{value}">'


def _layout(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en"><head><meta charset="utf-8">'
        f"<title>{escape(title)} | Citadel</title></head>"
        f"<body><main><h1>{escape(title)}</h1>{body}</main></body></html>"
    )


def _notice(message: Optional[str], kind: str) -> str:
    if not message:
        return ""
    return f'<div class="{kind}">{escape(message)}</div>'


def _hidden(name: str, value: str) -> str:
    return _HIDDEN_FIELD.format(name=name, value=escape(value, quote=True))


def _error_message(exc: ServiceError) -> str:
    return exc.message if exc.expose_message else "Something went wrong. Please try again."


def _render(
    title: str,
    body: Callable[[str], str],
    *,
    status_code: int = 200,
) -> HTMLResponse:
    """Render a page whose body embeds a freshly minted CSRF token."""
    settings = get_runtime().settings
    token = csrf.new_token()
    response = HTMLResponse(_layout(title, body(token)), status_code=status_code)
    csrf.set_csrf_cookie(response, token, settings)
    return response


def _register_form(error: Optional[str] = None, email: str = "", username: str = ""):
    def body(token: str) -> str:
        return (
            _notice(error, "error")
            + '<form method="post" action="/register">'
            + _hidden(csrf.CSRF_FORM_FIELD, token)
            + f'<label>Email <input type="email" name="email" value="{escape(email)}" required></label>'
            + f'<label>Username <input type="text" name="username" value="{escape(username)}"></label>'
            + '<label>First name <input type="text" name="first_name"></label>'
            + '<label>Last name <input type="text" name="last_name"></label>'
            + '<label>Password <input type="password" name="password" required></label>'
            + '<button type="submit">Create account</button></form>'
            + '<p><a href="/login">Already registered? Sign in</a></p>'
        )

    return body


def _login_form(error: Optional[str] = None, email: str = ""):
    def body(token: str) -> str:
        return (
            _notice(error, "error")
            + '<form method="post" action="/login">'
            + _hidden(csrf.CSRF_FORM_FIELD, token)
            + f'<label>Email <input type="email" name="email" value="{escape(email)}" required></label>'
            + '<label>Password <input type="password" name="password" required></label>'
            + '<button type="submit">Sign in</button></form>'
            + '<p><a href="/forgot-password">Forgot your password?</a></p>'
        )

    return body


def _forgot_form(message: Optional[str] = None, error: Optional[str] = None):
    def body(token: str) -> str:
        return (
            _notice(message, "success")
            + _notice(error, "error")
            + '<form method="post" action="/forgot-password">'
            + _hidden(csrf.CSRF_FORM_FIELD, token)
            + _hidden("render_time", encode_render_time())
            # bots fill every field; people never see this one
            + '<div style="display:none" aria-hidden="true">'
            + '<label>Website <input type="text" name="website" tabindex="-1" autocomplete="off"></label></div>'
            + '<label>Email <input type="email" name="email" required></label>'
            + '<button type="submit">Send reset link</button></form>'
        )

    return body


def _reset_form(reset_token: str, error: Optional[str] = None):
    def body(token: str) -> str:
        return (
            _notice(error, "error")
            + '<form method="post" action="/reset-password">'
            + _hidden(csrf.CSRF_FORM_FIELD, token)
            + _hidden("token", reset_token)
            + '<label>New password <input type="password" name="password" required></label>'
            + '<label>Confirm password <input type="password" name="confirm_password" required></label>'
            + '<button type="submit">Reset password</button></form>'
        )

    return body


def _signed_in_redirect(user_id: int, flash: str) -> RedirectResponse:
    runtime = get_runtime()
    session_token = runtime.sessions.create(user_id)
    runtime.sessions.set_flash(session_token, flash)
    response = RedirectResponse("/", status_code=303)
    runtime.sessions.set_cookie(response, session_token)
    return response


@router.get("/", response_class=HTMLResponse)
async def home(identity: Optional[Identity] = Depends(optional_identity)):
    runtime = get_runtime()
    flash = None
    if isinstance(identity, SessionUser):
        flash = runtime.sessions.take_flash(identity.session_token)

    def body(token: str) -> str:
        parts = [_notice(flash, "success")]
        if identity is None:
            parts.append(
                '<p><a href="/login">Sign in</a> or <a href="/register">create an account</a>.</p>'
            )
        else:
            parts.append(f"<p>Signed in as {escape(identity.username)} ({escape(identity.email)})</p>")
            parts.append(
                '<form method="post" action="/logout">'
                + _hidden(csrf.CSRF_FORM_FIELD, token)
                + '<button type="submit">Sign out</button></form>'
            )
        return "".join(parts)

    return _render("Home", body)


@router.get("/register", response_class=HTMLResponse)
async def register_page():
    return _render("Register", _register_form())


@router.post("/register")
async def register_submit(
    email: str = Form(""),
    password: str = Form(""),
    username: str = Form(""),
    first_name: str = Form(""),
    last_name: str = Form(""),
):
    runtime = get_runtime()
    try:
        user = await asyncio.to_thread(
            runtime.users.register,
            email,
            password,
            username=username or None,
            first_name=first_name,
            last_name=last_name,
        )
    except ServiceError as exc:
        return _render(
            "Register",
            _register_form(_error_message(exc), email=email, username=username),
            status_code=exc.status_code,
        )
    return _signed_in_redirect(user.id, REGISTER_FLASH)


@router.get("/login", response_class=HTMLResponse)
async def login_page():
    return _render("Sign in", _login_form())


@router.post("/login")
async def login_submit(email: str = Form(""), password: str = Form("")):
    runtime = get_runtime()
    try:
        user = await asyncio.to_thread(runtime.users.authenticate, email, password)
    except ServiceError as exc:
        return _render("Sign in", _login_form(_error_message(exc), email=email), status_code=exc.status_code)
    logger.info("user_logged_in", user_id=user.id, channel="web")
    return _signed_in_redirect(user.id, LOGIN_FLASH)


@router.post("/logout")
async def logout_submit(identity: SessionUser = Depends(require_session_user)):
    runtime = get_runtime()
    runtime.sessions.destroy(identity.session_token)
    logger.info("session_destroyed", user_id=identity.user_id)
    response = RedirectResponse("/login", status_code=303)
    runtime.sessions.clear_cookie(response)
    return response


@router.get("/forgot-password", response_class=HTMLResponse)
async def forgot_password_page():
    return _render("Forgot password", _forgot_form())


@router.post("/forgot-password")
async def forgot_password_submit(
    request: Request,
    background_tasks: BackgroundTasks,
    email: str = Form(""),
    website: str = Form(""),
    render_time: str = Form(""),
):
    runtime = get_runtime()
    try:
        result = await runtime.password_resets.request_reset(
            email,
            client_ip(request),
            honeypot=website,
            render_time=render_time,
            schedule=background_tasks.add_task,
        )
    except ServiceError as exc:
        return _render(
            "Forgot password", _forgot_form(error=_error_message(exc)), status_code=exc.status_code
        )
    return _render("Forgot password", _forgot_form(message=result.message))


@router.get("/reset-password", response_class=HTMLResponse)
async def reset_password_page(token: str = Query("")):
    runtime = get_runtime()
    try:
        runtime.password_resets.validate_token(token)
    except ServiceError as exc:
        page = _layout(
            "Reset password",
            _notice(_error_message(exc), "error")
            + '<p><a href="/forgot-password">Request a new link</a></p>',
        )
        return HTMLResponse(page, status_code=exc.status_code)
    return _render("Reset password", _reset_form(token))


@router.post("/reset-password")
async def reset_password_submit(
    token: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
):
    if password != confirm_password:
        return _render(
            "Reset password", _reset_form(token, PASSWORD_MISMATCH_MESSAGE), status_code=400
        )
    runtime = get_runtime()
    try:
        await asyncio.to_thread(runtime.password_resets.reset_password, token, password)
    except ServiceError as exc:
        return _render(
            "Reset password", _reset_form(token, _error_message(exc)), status_code=exc.status_code
        )
    page = _layout(
        "Reset password",
        '<div class="success">Password reset successfully! '
        '<a href="/login">Click here to sign in</a></div>',
    )
    return HTMLResponse(page)
