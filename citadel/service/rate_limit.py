from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from citadel.logging import get_logger
from citadel.service.errors import RateLimitedError
from citadel.service.users import AuthStore
from citadel.storage.models import utcnow

logger = get_logger(__name__)

RATE_LIMIT_MESSAGE = "Too many password reset requests. Please try again later."
ATTEMPT_RETENTION = timedelta(hours=24)


class ResetRateLimiter:
    """Sliding-window limits on password reset requests, backed by the relational store.

    A request is rejected when, within the last hour, the same email already
    has ``email_limit`` attempts or the same IP has ``ip_limit`` attempts.
    Rejected requests are still recorded.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        email_limit: int = 3,
        ip_limit: int = 10,
        window: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.email_limit = email_limit
        self.ip_limit = ip_limit
        self.window = window
        self._clock = clock

    def check_and_record(self, email: str, ip_address: str) -> None:
        now = self._clock()
        since = now - self.window
        email_count = self.store.count_reset_attempts(since, email=email)
        ip_count = self.store.count_reset_attempts(since, ip_address=ip_address)
        self.store.record_reset_attempt(email, ip_address, now)

        if email_count >= self.email_limit:
            logger.warning("reset_rate_limited", scope="email", attempts=email_count)
            raise RateLimitedError(RATE_LIMIT_MESSAGE)
        if ip_count >= self.ip_limit:
            logger.warning(
                "reset_rate_limited", scope="ip", client_ip=ip_address, attempts=ip_count
            )
            raise RateLimitedError(RATE_LIMIT_MESSAGE)

    def prune(self) -> int:
        """Delete attempts older than the retention period."""
        removed = self.store.prune_reset_attempts(self._clock() - ATTEMPT_RETENTION)
        if removed:
            logger.info("reset_attempts_pruned", removed=removed)
        return removed
