"""
Circuit Breaker for calls into the external analyzer.

Protects against a failing or hanging dependency: once failures inside the
monitoring window reach the threshold the circuit opens and calls go
straight to the fallback until the recovery timeout allows a single trial call.

Error text is never replaced with a generic message. Every failure path
keeps the original exception message so operators can tell a root cause
from a circuit-level symptom.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional, TypeVar

from mnemo.errors import CircuitBreakerError
from mnemo.models import CircuitState

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]

_USE_DEFAULT = object()


class FailureWindow:
    """Rolling record of (timestamp, success) outcomes.

    Entries older than the window are pruned lazily on every access.
    """

    def __init__(self, window: float, clock: Callable[[], float]):
        self.window = window
        self._clock = clock
        self._events: deque[tuple[float, bool]] = deque()

    def _prune(self) -> None:
        cutoff = self._clock() - self.window
        while self._events and self._events[0][0] <= cutoff:
            self._events.popleft()

    def record(self, success: bool) -> None:
        self._events.append((self._clock(), success))
        self._prune()

    @property
    def failures(self) -> int:
        self._prune()
        return sum(1 for _, ok in self._events if not ok)

    @property
    def successes(self) -> int:
        self._prune()
        return sum(1 for _, ok in self._events if ok)

    @property
    def success_rate(self) -> float:
        self._prune()
        if not self._events:
            return 1.0
        return sum(1 for _, ok in self._events if ok) / len(self._events)

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        self._prune()
        return len(self._events)


class CircuitBreaker:
    """Async circuit breaker with a primary/fallback execution contract.

    All timing arguments are in seconds and all of them are required.

    Usage:
        breaker = CircuitBreaker(
            name="semantic",
            failure_threshold=3,
            recovery_timeout=5.0,
            request_timeout=60.0,
            monitoring_window=120.0,
        )
        result = await breaker.execute(call_analyzer, fallback=scan_with_regex)
    """

    def __init__(
        self,
        *,
        failure_threshold: int,
        recovery_timeout: float,
        request_timeout: float,
        monitoring_window: float,
        name: str = "analyzer",
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.request_timeout = request_timeout
        self.monitoring_window = monitoring_window
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._window = FailureWindow(monitoring_window, clock)
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        self._total_requests = 0
        self.last_error: Optional[str] = None

    @classmethod
    def from_settings(cls, settings, name: str = "analyzer", **kwargs) -> "CircuitBreaker":
        """Build from a CircuitBreakerSettings section (values in ms)."""
        return cls(
            failure_threshold=settings.failure_threshold,
            recovery_timeout=settings.recovery_timeout_ms / 1000,
            request_timeout=settings.request_timeout_ms / 1000,
            monitoring_window=settings.monitoring_window_ms / 1000,
            name=name,
            **kwargs,
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._window.failures

    @property
    def success_rate(self) -> float:
        return self._window.success_rate

    def time_since_last_failure(self) -> Optional[float]:
        if self._last_failure_time is None:
            return None
        return self._clock() - self._last_failure_time

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(f"Circuit {self.name}: {old_state.value} -> {new_state.value} ({reason})")

    def _recovery_elapsed(self) -> bool:
        elapsed = self.time_since_last_failure()
        return elapsed is not None and elapsed >= self.recovery_timeout

    def _error(self, message: str, code: str = "CIRCUIT_BREAKER_ERROR", **kwargs) -> CircuitBreakerError:
        return CircuitBreakerError(
            message,
            state=self._state.value,
            failure_count=self.failure_count,
            success_rate=self.success_rate,
            time_since_last_failure=self.time_since_last_failure(),
            code=code,
            **kwargs,
        )

    def record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            # failures that opened the circuit do not count against the recovered one
            self._window.clear()
            self._transition(CircuitState.CLOSED, "trial call succeeded")
        self._window.record(True)

    def record_failure(self, reason: str) -> None:
        """Account a failed primary call, opening the circuit when due."""
        self._window.record(False)
        self._last_failure_time = self._clock()
        self.last_error = reason

        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, f"trial call failed: {reason}")
        elif self._state is CircuitState.CLOSED and self._window.failures >= self.failure_threshold:
            self._transition(
                CircuitState.OPEN,
                f"{self._window.failures} failures within {self.monitoring_window:g}s",
            )

    async def _short_circuit(self, fallback: Optional[Operation[T]]) -> T:
        elapsed = self.time_since_last_failure()
        since = f"{elapsed:.1f}s ago" if elapsed is not None else "never"
        message = (
            f"Circuit breaker '{self.name}' is {self._state.value}: "
            f"{self.failure_count} failures, success rate {self.success_rate:.0%}, "
            f"last failure {since}"
        )
        self.last_error = message
        if fallback is None:
            raise self._error(message, code="CIRCUIT_OPEN", primary_error=message)
        try:
            return await fallback()
        except Exception as e:
            raise self._error(
                f"{message}; fallback failed: {e}",
                code="CIRCUIT_OPEN",
                primary_error=message,
                fallback_error=str(e),
            ) from e

    async def execute(
        self,
        primary: Operation[T],
        fallback: Optional[Operation[T]] = None,
        *,
        timeout: Any = _USE_DEFAULT,
    ) -> T:
        """Run ``primary`` under the breaker, using ``fallback`` when it cannot.

        ``timeout`` overrides request_timeout for this call; None disables it
        for callers that enforce their own deadline.
        """
        self._total_requests += 1

        if self._state is CircuitState.OPEN:
            if self._recovery_elapsed():
                self._transition(CircuitState.HALF_OPEN, "recovery timeout elapsed")
            else:
                return await self._short_circuit(fallback)

        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                return await self._short_circuit(fallback)
            self._trial_in_flight = True

        request_timeout = self.request_timeout if timeout is _USE_DEFAULT else timeout
        try:
            try:
                if request_timeout is None:
                    result = await primary()
                else:
                    result = await asyncio.wait_for(primary(), timeout=request_timeout)
            except asyncio.TimeoutError:
                primary_error = f"Operation timed out after {request_timeout:g}s"
            except Exception as e:
                primary_error = str(e) or type(e).__name__
            else:
                self.record_success()
                return result
        finally:
            self._trial_in_flight = False

        self.record_failure(primary_error)

        if fallback is None:
            raise self._error(
                f"Primary call failed: {primary_error}",
                primary_error=primary_error,
            )

        try:
            result = await fallback()
        except Exception as e:
            raise self._error(
                f"Primary call failed: {primary_error}; fallback failed: {e}",
                primary_error=primary_error,
                fallback_error=str(e),
            ) from e

        logger.warning(f"Circuit {self.name}: primary failed ({primary_error}), served fallback result")
        return result

    def reset(self) -> None:
        """Force CLOSED and forget history. Operator/test use only."""
        self._state = CircuitState.CLOSED
        self._window.clear()
        self._last_failure_time = None
        self._trial_in_flight = False
        self._total_requests = 0
        self.last_error = None
        logger.info(f"Circuit {self.name}: reset to CLOSED")

    def stats(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "failures": self._window.failures,
            "successes": self._window.successes,
            "success_rate": self.success_rate,
            "total_requests": self._total_requests,
            "time_since_last_failure": self.time_since_last_failure(),
            "last_error": self.last_error,
        }
