"""
Async Circuit Breaker

Three states: CLOSED, OPEN, HALF_OPEN. Consecutive failures open the circuit;
after ``recovery_timeout`` a limited number of trial calls are let through and
the first success closes it again.

A module-level registry hands out one named breaker per provider so that a
failing LLM backend or search endpoint is isolated from the others.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from core.metrics import CIRCUIT_STATE

T = TypeVar("T")

_STATE_GAUGE_VALUE = {"closed": 0, "open": 1, "half_open": 2}


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """Raised when the circuit breaker is OPEN and refuses calls."""
    pass


class AsyncCircuitBreaker:
    """
    Asynchronous circuit breaker.

    Typical usage:
        breaker = AsyncCircuitBreaker("openai", failure_threshold=5, recovery_timeout=60)
        result = await breaker.call(lambda: provider.generate(prompt))
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0

        self._lock = asyncio.Lock()
        self._logger = logging.getLogger(__name__)
        self._publish_state()

    # ----------------------------------------------------------------------
    # Inspection
    # ----------------------------------------------------------------------

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def failure_count(self) -> int:
        return self._failure_count

    async def is_open(self) -> bool:
        """Whether calls are currently rejected (attempts recovery first)."""
        async with self._lock:
            self._maybe_recover()
            return self._state == BreakerState.OPEN

    async def reset(self) -> None:
        async with self._lock:
            self._state = BreakerState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._half_open_calls = 0
            self._publish_state()
            self._logger.info(
                "Circuit breaker manually reset to CLOSED",
                extra={"event": "breaker_reset", "breaker": self.name},
            )

    # ----------------------------------------------------------------------
    # State transitions (call with the lock held)
    # ----------------------------------------------------------------------

    def _maybe_recover(self) -> None:
        if self._state != BreakerState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.recovery_timeout:
            self._state = BreakerState.HALF_OPEN
            self._half_open_calls = 0
            self._publish_state()
            self._logger.info(
                "Circuit breaker transitioned to HALF_OPEN after timeout",
                extra={"event": "breaker_half_open", "breaker": self.name, "timeout": self.recovery_timeout},
            )

    def _record_failure(self) -> None:
        self._failure_count += 1
        # a failed trial call re-opens immediately
        if self._state == BreakerState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._open()

    def _record_success(self) -> None:
        if self._state != BreakerState.CLOSED:
            self._state = BreakerState.CLOSED
            self._publish_state()
            self._logger.info(
                "Circuit breaker closed after successful call",
                extra={"event": "breaker_closed", "breaker": self.name},
            )
        self._failure_count = 0
        self._half_open_calls = 0

    def _release_trial(self) -> None:
        # no await: runs atomically with respect to other coroutines
        if self._state == BreakerState.HALF_OPEN and self._half_open_calls > 0:
            self._half_open_calls -= 1

    def _open(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._failure_count = 0
        self._publish_state()
        self._logger.warning(
            "Circuit breaker opened",
            extra={"event": "breaker_open", "breaker": self.name, "threshold": self.failure_threshold},
        )

    def _publish_state(self) -> None:
        CIRCUIT_STATE.labels(service=self.name).set(_STATE_GAUGE_VALUE[self._state.value])

    # ----------------------------------------------------------------------
    # Protected call
    # ----------------------------------------------------------------------

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``func`` under breaker protection.

        :raises CircuitBreakerOpenError: if the circuit is OPEN or the
            HALF_OPEN trial budget is used up.
        """
        async with self._lock:
            self._maybe_recover()

            if self._state == BreakerState.OPEN:
                raise CircuitBreakerOpenError(f"Circuit breaker '{self.name}' is OPEN")

            if self._state == BreakerState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(f"Circuit breaker '{self.name}' HALF_OPEN limit reached")
                self._half_open_calls += 1

        # I/O happens outside the lock
        try:
            result = await func()
        except Exception:
            async with self._lock:
                self._record_failure()
            raise
        except BaseException:
            # cancelled: hand the trial slot back, the service was never judged
            self._release_trial()
            raise
        else:
            async with self._lock:
                self._record_success()
            return result


# ----------------------------------------------------------------------
# Registry of named breakers
# ----------------------------------------------------------------------

_breakers: Dict[str, AsyncCircuitBreaker] = {}


def get_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 60.0,
    half_open_max_calls: int = 1,
) -> AsyncCircuitBreaker:
    """
    Return the breaker registered under ``name``, creating it on first use.
    Creation never awaits, so it is atomic with respect to the event loop.
    """
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = AsyncCircuitBreaker(
            name,
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            half_open_max_calls=half_open_max_calls,
        )
        _breakers[name] = breaker
    return breaker


def reset_circuit_breakers() -> None:
    """Forget every registered breaker (tests and reconfiguration)."""
    _breakers.clear()
