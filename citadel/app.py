from __future__ import annotations

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from citadel.api.auth import LoginRedirect
from citadel.api.error_handling import register_exception_handlers
from citadel.api.pages import FORM_PATHS
from citadel.api.pages import router as pages_router
from citadel.api.routes import client_ip
from citadel.api.routes import router as api_router
from citadel.api.schemas import Envelope, ErrorBody
from citadel.config import get_settings
from citadel.logging import get_logger, set_correlation_id
from citadel.service import csrf
from citadel.service.runtime import Runtime, get_runtime
from citadel.service.sessions import SESSION_COOKIE

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"
__build__ = _settings.build_sha

_sweep_task: asyncio.Task | None = None


async def _run_periodic_sweep(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop pruning reset attempts and expired sessions."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await asyncio.to_thread(runtime.sweep)
                logger.info("periodic_sweep_complete", **removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("periodic_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("periodic_sweep_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _sweep_task
    # Startup; a runtime that cannot reach its stores must not serve traffic
    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_periodic_sweep(runtime, runtime.settings.reset_attempt_prune_interval_seconds)
    )

    yield

    # Shutdown
    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Citadel", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:8080",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8080",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        csrf.CSRF_HEADER,
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


def _csrf_rejection() -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(code="forbidden", message="missing or invalid CSRF token"),
    )
    return JSONResponse(status_code=403, content=envelope.model_dump())


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Double-submit check for cookie-authenticated and HTML form requests."""
    if csrf.is_exempt(request):
        return await call_next(request)
    if not request.cookies.get(SESSION_COOKIE) and request.url.path not in FORM_PATHS:
        return await call_next(request)
    submitted = await csrf.extract_submitted_token(request)
    if not csrf.tokens_match(request.cookies.get(csrf.CSRF_COOKIE), submitted):
        logger.warning(
            "csrf_rejected",
            path=request.url.path,
            method=request.method,
            submitted=bool(submitted),
        )
        return _csrf_rejection()
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    response.headers.setdefault("API-Version", __version__)
    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
        client_ip=client_ip(request),
    )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for log tracing.

    The ID comes from the client's ``X-Request-ID`` header when present,
    otherwise a new UUID is generated. It is bound for structured logging and
    echoed back in the ``X-Request-ID`` response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)


@app.exception_handler(LoginRedirect)
async def handle_login_redirect(request: Request, exc: LoginRedirect):
    logger.info("login_required", path=request.url.path)
    return RedirectResponse(exc.location, status_code=303)


app.include_router(api_router)
app.include_router(pages_router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report database and token cache reachability plus build info."""
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }
    cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }

    return {
        "status": "healthy" if db_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
