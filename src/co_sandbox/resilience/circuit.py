"""Circuit breaker guarding repeatedly failing container and daemon calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from co_sandbox.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Three-state breaker: closed → open → half-open → closed.

    Consecutive failures are counted until ``failure_threshold`` trips the
    breaker; any success in the closed state starts the count over.
    While open, calls are rejected without running the operation until
    ``recovery_timeout`` seconds have passed; the next call then runs as
    a half-open trial. A successful trial closes the breaker, a failed
    one reopens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        name: str = "circuit",
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    async def call(self, operation: Callable[[], Awaitable[T]], operation_name: str = "") -> T:
        """
        Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: If the breaker is open and still cooling down.
        """
        label = operation_name or self.name
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure < self.recovery_timeout:
                raise CircuitOpenError(
                    f"Circuit breaker is open for {label}",
                    {"failures": self._failures, "recovery_timeout": self.recovery_timeout},
                )
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit breaker half-open for %s", label)

        try:
            result = await operation()
        except Exception:
            self._record_failure(label)
            raise

        self._record_success(label)
        return result

    def _record_success(self, label: str) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self.reset()
            logger.info("Circuit breaker closed for %s", label)
            return
        self._failures = 0

    def _record_failure(self, label: str) -> None:
        self._failures += 1
        self._last_failure = time.monotonic()
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning(
                    "Circuit breaker opened for %s after %d failure(s)", label, self._failures
                )
            self._state = CircuitState.OPEN

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure = 0.0
