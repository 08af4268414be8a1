"""
Rolling-window rate budget shared by every remote call in the process.

The remote API allows a fixed number of requests per rolling window.
Before each call a slot is reserved; if the window is full the caller
blocks until the oldest slot ages out, up to a hard ceiling. Consecutive
calls are additionally spaced by a minimum delay.
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

import structlog

from .errors import RateLimitExceeded


class RateBudget:
    """
    Thread-safe rolling-window request budget.

    Slots are reserved under a lock and the caller sleeps outside of it,
    so a waiting thread never holds up threads that could proceed.
    Reserved timestamps may lie slightly in the future when the minimum
    delay applies; the window count includes them, so the ceiling holds
    for any rolling window.
    """

    def __init__(
        self,
        max_requests: int = 300,
        window_seconds: float = 300,
        min_delay: float = 1.1,
        max_wait: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger: Any = None,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.min_delay = max(0.0, min_delay)
        self.max_wait = max(0.0, max_wait)
        self._clock = clock
        self._sleep = sleep
        self._logger = logger or structlog.get_logger(__name__)
        self._timestamps: Deque[float] = deque()
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, config, **kwargs) -> "RateBudget":
        """Build a budget from CrmSyncSettings."""
        return cls(
            max_requests=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
            min_delay=config.min_delay_seconds,
            max_wait=config.rate_limit_max_wait_seconds,
            **kwargs
        )

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def acquire(self) -> float:
        """
        Reserve a slot for one request, blocking if needed.

        Returns:
            Total seconds spent waiting

        Raises:
            RateLimitExceeded: The window stays full beyond max_wait
        """
        started = self._clock()
        deadline = started + self.max_wait

        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)

                if len(self._timestamps) < self.max_requests:
                    slot = now
                    if self._last is not None:
                        slot = max(now, self._last + self.min_delay)
                    self._timestamps.append(slot)
                    self._last = slot
                    delay = slot - now
                    break

                window_wait = self._timestamps[0] + self.window_seconds - now
                in_window = len(self._timestamps)

            if now + window_wait > deadline:
                self._logger.warning(
                    "Rate limit wait ceiling exceeded",
                    requests_in_window=in_window,
                    limit=self.max_requests,
                    retry_after=round(window_wait, 3),
                )
                raise RateLimitExceeded(
                    f"Rate limit of {self.max_requests} requests per "
                    f"{self.window_seconds}s exhausted; retry after {window_wait:.1f}s",
                    retry_after=window_wait,
                )

            self._logger.info(
                "Rate limit reached, waiting for window",
                requests_in_window=in_window,
                wait_seconds=round(window_wait, 3),
            )
            self._sleep(window_wait)

        if delay > 0:
            self._logger.debug("Spacing request", wait_seconds=round(delay, 3))
            self._sleep(delay)

        return self._clock() - started

    def status(self) -> Dict[str, Any]:
        """Current usage of the rolling window."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            used = len(self._timestamps)
            oldest = self._timestamps[0] if self._timestamps else None

        percentage = used / self.max_requests * 100
        reset_in = max(0.0, oldest + self.window_seconds - now) if oldest is not None else 0.0
        return {
            "limit": self.max_requests,
            "used": used,
            "remaining": max(0, self.max_requests - used),
            "percentage_used": round(percentage, 1),
            "window_seconds": self.window_seconds,
            "reset_in_seconds": round(reset_in, 3),
            "is_near_limit": percentage > 80,
            "is_at_limit": used >= self.max_requests,
        }

    def reset(self) -> None:
        """Forget all request history."""
        with self._lock:
            self._timestamps.clear()
            self._last = None
