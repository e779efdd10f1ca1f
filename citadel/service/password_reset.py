from __future__ import annotations

import asyncio
import base64
import binascii
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Set

from citadel.logging import get_logger
from citadel.service.credentials import hash_password
from citadel.service.email import EmailService, redact_email
from citadel.service.errors import ValidationError
from citadel.service.rate_limit import ResetRateLimiter
from citadel.service.users import AuthStore, EMAIL_PATTERN, normalize_email, validate_password
from citadel.storage.errors import ConstraintViolation
from citadel.storage.models import PasswordReset

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = (
    "If an account with that email exists, you will receive a password reset link shortly."
)
FORM_EXPIRED_MESSAGE = "Form expired. Please refresh the page and try again."
INVALID_RESET_TOKEN_MESSAGE = "invalid or expired reset token"
RESET_TOKEN_TTL = timedelta(hours=1)


class FormExpiredError(ValidationError):
    """The forgot-password form was rendered too long ago."""

    def __init__(self) -> None:
        super().__init__(FORM_EXPIRED_MESSAGE, detail={"field": "render_time"})


def encode_render_time(now: Optional[float] = None) -> str:
    """Encode the form render instant as base64 of its Unix timestamp."""
    stamp = int(time.time() if now is None else now)
    return base64.b64encode(str(stamp).encode()).decode("ascii")


def decode_render_time(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(base64.b64decode(value, validate=True).decode("ascii"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None


@dataclass
class ResetRequestResult:
    message: str
    issued: bool = False


class PasswordResetService:
    """Issue and redeem password reset tokens.

    Request handling never reveals whether an account exists: bots, invalid
    addresses, unknown users and delivery failures all receive
    :data:`GENERIC_RESET_MESSAGE`. The only visible differences are a stale
    form (:class:`FormExpiredError`) and rate limiting.
    """

    def __init__(
        self,
        store: AuthStore,
        limiter: ResetRateLimiter,
        email: EmailService,
        *,
        honeypot_delay_seconds: float = 2.0,
        min_form_seconds: int = 2,
        max_form_age_seconds: int = 30 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.email = email
        self.honeypot_delay_seconds = honeypot_delay_seconds
        self.min_form_seconds = min_form_seconds
        self.max_form_age_seconds = max_form_age_seconds
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    def _generic(self) -> ResetRequestResult:
        return ResetRequestResult(message=GENERIC_RESET_MESSAGE)

    async def request_reset(
        self,
        email: str,
        ip_address: str,
        *,
        honeypot: Optional[str] = None,
        render_time: Optional[str] = None,
        schedule: Optional[Callable[..., Any]] = None,
    ) -> ResetRequestResult:
        """Issue a reset token for a known account and queue its email.

        Delivery never runs on the request path, so a known address answers
        as fast as an unknown one. ``schedule`` (e.g. ``BackgroundTasks.add_task``)
        runs delivery after the response; without it a tracked task is used.
        """
        if honeypot:
            logger.warning("honeypot_triggered", client_ip=ip_address)
            await asyncio.sleep(self.honeypot_delay_seconds)
            return self._generic()

        rendered_at = decode_render_time(render_time)
        if rendered_at is not None:
            elapsed = self._clock() - rendered_at
            if elapsed < self.min_form_seconds:
                logger.warning("reset_form_too_fast", elapsed=round(elapsed, 3))
                return self._generic()
            if elapsed > self.max_form_age_seconds:
                logger.warning("reset_form_expired", elapsed=round(elapsed, 3))
                raise FormExpiredError()

        normalized = normalize_email(email)
        if not normalized or len(normalized) > 254 or not EMAIL_PATTERN.match(normalized):
            logger.warning("reset_invalid_email")
            return self._generic()

        self.limiter.check_and_record(normalized, ip_address)

        user = self.store.get_user_by_email(normalized)
        if user is None:
            logger.info("reset_unknown_email", email=normalized)
            return self._generic()

        try:
            reset = self.store.create_password_reset(user.id, ttl=RESET_TOKEN_TTL)
        except ConstraintViolation as exc:
            logger.error("reset_token_store_failed", user_id=user.id, error=exc.message)
            return self._generic()

        if schedule is not None:
            schedule(self.deliver, user.id, user.email, reset.token)
        else:
            task = asyncio.create_task(
                asyncio.to_thread(self.deliver, user.id, user.email, reset.token)
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return ResetRequestResult(message=GENERIC_RESET_MESSAGE, issued=True)

    def deliver(self, user_id: int, to_email: str, token: str) -> bool:
        sent = self.email.send_password_reset(to_email, token)
        if sent:
            logger.info("reset_email_sent", to=redact_email(to_email), user_id=user_id)
        else:
            logger.error("reset_email_failed", user_id=user_id)
        return sent

    async def drain(self) -> None:
        """Wait for queued deliveries; used at shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def validate_token(self, token: Optional[str]) -> PasswordReset:
        reset = self.store.get_valid_password_reset(token) if token else None
        if reset is None:
            raise ValidationError(INVALID_RESET_TOKEN_MESSAGE, detail={"field": "token"})
        return reset

    def reset_password(self, token: Optional[str], new_password: str) -> None:
        """Commit a new password and burn the token in one transaction."""
        reset = self.validate_token(token)
        validate_password(new_password)
        digest, salt = hash_password(new_password)
        if not self.store.consume_password_reset(reset.token, digest, salt):
            # lost a race with another redemption, or expired in between
            raise ValidationError(INVALID_RESET_TOKEN_MESSAGE, detail={"field": "token"})
        logger.info("password_reset_completed", user_id=reset.user_id)

    def prune_attempts(self) -> int:
        return self.limiter.prune()
