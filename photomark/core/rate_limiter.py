"""
Token Bucket Rate Limiter
=========================

Client-side admission control for outgoing generation attempts: at most
``capacity`` attempts per ``window`` seconds, refilled continuously.

Waiting callers block on a ``threading.Condition``. A wait ends when a token
becomes available or when the caller's cancel event is set; cancellers call
``notify()`` so waiters notice immediately instead of at the next poll.

Author: Photomark Project
"""

import logging
import threading
import time
from typing import Callable, Optional

from photomark.core.config import RateLimitConfig

logger = logging.getLogger(__name__)

# Upper bound on a single condition wait, so injected clocks are re-read
POLL_INTERVAL = 0.1


class TokenBucket:
    """
    Thread-safe token bucket.

    Args:
        config: Capacity and window
        clock: Monotonic time source in seconds
    """

    def __init__(self, config: Optional[RateLimitConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._capacity = float(self.config.capacity)
        self._rate = self.config.capacity / self.config.window
        self._tokens = self._capacity
        self._updated = clock()
        self._cond = threading.Condition()

    @property
    def available(self) -> float:
        with self._cond:
            self._refill()
            return self._tokens

    def _refill(self):
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._updated = now
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)

    def try_acquire(self) -> bool:
        """Take a token without waiting."""
        with self._cond:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def acquire(self, cancel_event: Optional[threading.Event] = None,
                timeout: Optional[float] = None) -> bool:
        """
        Block until a token is taken.

        Returns:
            True if a token was taken, False if cancelled or timed out
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        waited = False
        with self._cond:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    return False
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True

                wait = (1.0 - self._tokens) / self._rate
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    wait = min(wait, remaining)
                if not waited:
                    logger.debug(f"Rate limit reached, waiting up to {wait:.2f}s for a token")
                    waited = True
                self._cond.wait(min(wait, POLL_INTERVAL))

    def refund(self):
        """Return a token taken by an attempt that never reached the network."""
        with self._cond:
            self._refill()
            self._tokens = min(self._capacity, self._tokens + 1.0)
            self._cond.notify_all()

    def notify(self):
        """Wake every waiter so it can re-check its cancel event."""
        with self._cond:
            self._cond.notify_all()
