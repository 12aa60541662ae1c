"""
Circuit breaker guarding calls to the archive tier.

When the archive keeps failing, reads stop waiting on it and degrade to
primary-only results until the recovery timeout elapses.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from hybridstore.config.config import CircuitBreakerConfig

logger = structlog.get_logger(__name__)


class CircuitBreakerState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Features:
    - Opens after ``failure_threshold`` consecutive failures
    - Allows a limited number of probe calls once the recovery timeout passes
    - Closes again on the first successful probe
    """

    def __init__(self, name: str, config: CircuitBreakerConfig) -> None:
        self.name = name
        self.failure_threshold = config.failure_threshold
        self.timeout_duration = config.recovery_timeout_seconds
        self.half_open_max_calls = config.half_open_max_calls

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def is_open(self) -> bool:
        """True while the breaker rejects calls and the recovery timeout has not elapsed."""
        return self._state == CircuitBreakerState.OPEN and self._time_until_retry() > 0

    async def can_execute(self) -> bool:
        """Check if the circuit breaker allows execution."""
        async with self._lock:
            if self._state == CircuitBreakerState.CLOSED:
                return True

            if self._state == CircuitBreakerState.OPEN:
                if self._last_failure_time and time.monotonic() - self._last_failure_time >= self.timeout_duration:
                    self._transition(CircuitBreakerState.HALF_OPEN)
                else:
                    return False

            # Half-open: allow a limited number of probes
            if self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

    async def record_success(self) -> None:
        async with self._lock:
            if self._state != CircuitBreakerState.CLOSED:
                logger.info("Circuit breaker closed", breaker=self.name)
            self._transition(CircuitBreakerState.CLOSED)

    async def record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()

            if self._state == CircuitBreakerState.HALF_OPEN or (
                self._state == CircuitBreakerState.CLOSED and self._failure_count >= self.failure_threshold
            ):
                logger.warning("Circuit breaker opened", breaker=self.name, failures=self._failure_count)
                self._transition(CircuitBreakerState.OPEN)

    async def reset(self) -> None:
        """Manually reset the circuit breaker."""
        async with self._lock:
            self._transition(CircuitBreakerState.CLOSED)
            self._last_failure_time = None

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "time_until_retry": self._time_until_retry(),
        }

    def _time_until_retry(self) -> float:
        if self._state != CircuitBreakerState.OPEN or not self._last_failure_time:
            return 0.0
        return max(0.0, self.timeout_duration - (time.monotonic() - self._last_failure_time))

    def _transition(self, state: CircuitBreakerState) -> None:
        self._state = state
        self._half_open_calls = 0
        if state != CircuitBreakerState.OPEN:
            self._failure_count = 0
