"""
Circuit Breaker
===============

Stops new generation requests from piling onto a service that keeps
failing.

States:
    CLOSED     requests flow; consecutive failures are counted
    OPEN       requests are refused until ``reset_timeout`` has passed
    HALF_OPEN  one trial request is let through; its result closes or
               re-opens the circuit

A "failure" is an operation that used up its whole retry budget on
retryable errors. Any answer from the service that is not such a failure
(success, safety block, non-retryable HTTP error) counts as healthy.

Author: Photomark Project
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from photomark.core.config import CircuitBreakerConfig

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    Args:
        config: Failure threshold and reset timeout
        clock: Monotonic time source in seconds
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def retry_in(self) -> float:
        """Seconds until an open circuit lets a trial through, 0 otherwise."""
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return 0.0
            return max(0.0, self._opened_at + self.config.reset_timeout - self._clock())

    def allow_request(self) -> bool:
        """
        Ask to start a new operation.

        In HALF_OPEN only the first caller is admitted; it becomes the trial
        and must be settled with ``record_success``, ``record_failure`` or
        ``release_trial``.
        """
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def record_success(self):
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("Circuit closed, service is answering again")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self):
        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._state is CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._open()

    def release_trial(self):
        """The trial ended without a verdict (cancelled); admit another one."""
        with self._lock:
            self._trial_in_flight = False

    def reset(self):
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def _open(self):
        # Caller holds self._lock
        if self._state is not CircuitState.OPEN:
            logger.warning(
                f"Circuit opened after {self._failures} consecutive failure(s); "
                f"refusing requests for {self.config.reset_timeout:.0f}s"
            )
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()

    def _maybe_half_open(self):
        # Caller holds self._lock
        if (self._state is CircuitState.OPEN
                and self._clock() - self._opened_at >= self.config.reset_timeout):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit half-open, letting one trial request through")
