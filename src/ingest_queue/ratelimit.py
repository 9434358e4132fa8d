"""Fixed-window in-memory rate limiter.

One instance is built by the app factory and shared through app.state;
counters are per process. Expired windows are swept from check() every
`sweep_every` calls, or sooner once `max_windows` keys are tracked.
"""

import logging
import math
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel

from .errors import RateLimitExceeded
from .models import RateLimitRule

logger = logging.getLogger(__name__)


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_at: float
    retry_after_s: Optional[int] = None


class RateLimiter:
    def __init__(
        self,
        rules: Dict[str, RateLimitRule],
        clock: Callable[[], float] = time.monotonic,
        sweep_every: int = 1000,
        max_windows: int = 10000,
    ):
        self.rules = dict(rules)
        self.clock = clock
        self.sweep_every = sweep_every
        self.max_windows = max_windows
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._checks = 0
        self._lock = threading.Lock()

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, (_, reset_at) in self._windows.items() if now >= reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def check(self, group: str, client_key: str) -> RateLimitResult:
        """Count one request against `group` for `client_key`.

        Groups without a rule are unlimited.
        """
        rule = self.rules.get(group)
        if rule is None:
            return RateLimitResult(allowed=True, remaining=-1, reset_at=self.clock())

        key = f"{group}:{client_key}"
        now = self.clock()
        with self._lock:
            self._checks += 1
            if self._checks >= self.sweep_every or len(self._windows) >= self.max_windows:
                self._checks = 0
                self._sweep_locked(now)

            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + rule.window_s
            if count >= rule.max_requests:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after_s=max(1, math.ceil(reset_at - now)),
                )
            count += 1
            self._windows[key] = (count, reset_at)
        return RateLimitResult(
            allowed=True, remaining=rule.max_requests - count, reset_at=reset_at
        )

    def enforce(self, group: str, client_key: str) -> RateLimitResult:
        """check() that raises RateLimitExceeded when over the limit."""
        result = self.check(group, client_key)
        if not result.allowed:
            logger.warning("Rate limit exceeded for %s:%s", group, client_key)
            raise RateLimitExceeded(f"{group}:{client_key}", result.retry_after_s)
        return result

    def cleanup(self) -> int:
        """Drop expired windows; returns how many were removed."""
        with self._lock:
            return self._sweep_locked(self.clock())

    def __len__(self) -> int:
        return len(self._windows)
