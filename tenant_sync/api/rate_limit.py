"""
Minimum-interval rate limiter for outbound Notion API calls.

Notion allows an average of three requests per second per integration.
Every call made by NotionSource passes through one RateLimiter, which
spaces calls at least ``min_interval`` seconds apart across threads.
"""

from __future__ import annotations

import threading
import time
from typing import Callable


class RateLimiter:
    """
    Enforce a minimum spacing between calls.

    The clock and sleep functions are injectable so tests can run without
    real delays.

    Usage:
        limiter = RateLimiter(min_interval=0.35)
        limiter.wait()
        client.pages.retrieve(page_id=page_id)
    """

    def __init__(
        self,
        min_interval: float = 0.35,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if min_interval < 0:
            raise ValueError(f"min_interval must be >= 0, got {min_interval}")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: float | None = None

    def wait(self) -> float:
        """
        Block until the next call is allowed and reserve that slot.

        Returns:
            Seconds spent waiting
        """
        with self._lock:
            now = self._clock()
            waited = 0.0
            if self._last_call is not None:
                remaining = self.min_interval - (now - self._last_call)
                if remaining > 0:
                    self._sleep(remaining)
                    waited = remaining
                    now = self._clock()
            self._last_call = now
            return waited

    def reset(self) -> None:
        with self._lock:
            self._last_call = None
