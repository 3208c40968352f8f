"""
Per-identity attempt throttling.

The limiter keeps one attempt record per identity for the lifetime of the
process. A record resets once the time since its last attempt exceeds the
window; a rejected attempt leaves the record untouched.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

from .constants import RATE_LIMIT_MAX_ATTEMPTS, RATE_LIMIT_WINDOW_SECONDS
from .exceptions import RateLimitExceeded

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass
class AttemptRecord:
    """Attempts counted for one identity in the current window."""

    count: int
    window_start: float
    last_attempt: float


class RateLimiter:
    """
    Sliding-window attempt throttle keyed by identity.

    Parameters
    ----------
    max_attempts : int, default=RATE_LIMIT_MAX_ATTEMPTS
        Attempts allowed per window.
    window_seconds : float, default=RATE_LIMIT_WINDOW_SECONDS
        Window length in seconds.
    clock : Callable[[], float], default=time.monotonic
        Source of the current time in seconds.

    Examples
    --------
    >>> limiter = RateLimiter(max_attempts=2)
    >>> limiter.check("AB123")
    >>> limiter.check("AB123")
    >>> limiter.check("AB123")  # raises RateLimitExceeded
    """

    def __init__(
        self,
        max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts: Dict[str, AttemptRecord] = {}

    def check(self, identity_key: str) -> None:
        """
        Count one attempt for ``identity_key`` or reject it.

        Raises
        ------
        RateLimitExceeded
            If the identity already used every attempt in the window. The
            error carries ``window - (now - last_attempt)`` as wait time.
        """
        now = self._clock()
        record = self._attempts.get(identity_key)

        if record is not None and now - record.last_attempt > self.window_seconds:
            logger.debug("Attempt window elapsed, resetting", identity_key=identity_key)
            record = None

        if record is None:
            record = AttemptRecord(count=0, window_start=now, last_attempt=now)

        if record.count >= self.max_attempts:
            wait_seconds = self.window_seconds - (now - record.last_attempt)
            logger.warning(
                "Attempt rejected by rate limiter",
                identity_key=identity_key,
                attempts=record.count,
                wait_seconds=wait_seconds,
            )
            raise RateLimitExceeded(identity_key, wait_seconds, self.max_attempts)

        record.count += 1
        record.last_attempt = now
        self._attempts[identity_key] = record

    def attempts(self, identity_key: str) -> int:
        """Return the number of attempts counted in the identity's current window."""
        record = self._attempts.get(identity_key)
        if record is None or self._clock() - record.last_attempt > self.window_seconds:
            return 0
        return record.count

    def reset(self, identity_key: Optional[str] = None) -> None:
        """Forget one identity, or every identity when no key is given."""
        if identity_key is None:
            self._attempts.clear()
        else:
            self._attempts.pop(identity_key, None)


_shared_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Return the process-wide limiter shared by all workflow instances."""
    global _shared_limiter
    if _shared_limiter is None:
        _shared_limiter = RateLimiter()
    return _shared_limiter
