"""Circuit breaker guarding calls to the public audit log."""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Opens after ``failure_threshold`` consecutive failures.

    While open, ``allow_request`` refuses calls until ``recovery_seconds``
    have passed; then a single trial call is let through (half-open). A
    trial success closes the breaker, a trial failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_seconds = recovery_seconds
        self.clock = clock
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> BreakerState:
        if (
            self._state == BreakerState.OPEN
            and self.clock() - self._opened_at >= self.recovery_seconds
        ):
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker %s half-open", self.name)
        return self._state

    def allow_request(self) -> bool:
        with self._lock:
            state = self._current_state()
            if state == BreakerState.CLOSED:
                return True
            if state == BreakerState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state != BreakerState.CLOSED:
                logger.info("Circuit breaker %s closed", self.name)
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            state = self._current_state()
            self._failures += 1
            if state == BreakerState.HALF_OPEN or self._failures >= self.failure_threshold:
                self._state = BreakerState.OPEN
                self._opened_at = self.clock()
                self._failures = 0
                self._trial_in_flight = False
                logger.warning("Circuit breaker %s tripped open", self.name)

    def reset(self) -> None:
        self.record_success()
