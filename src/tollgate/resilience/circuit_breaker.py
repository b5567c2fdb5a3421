"""Three-state circuit breaker for calls to a single backend.

States:

* ``closed`` -- calls pass through. Each failure bumps ``failure_count``;
  reaching ``threshold`` opens the circuit. A success clears the streak.
* ``open`` -- calls are rejected with
  :class:`~tollgate.exceptions.CircuitOpenError` until ``reset_timeout``
  has elapsed since the last failure. The next call attempt after that
  moves the breaker to ``half_open``.
* ``half_open`` -- exactly one probe call is let through. Success closes
  the circuit and zeroes ``failure_count``; failure reopens it with a fresh
  ``last_failure_at``. Other callers arriving while the probe is in flight
  are rejected.

The breaker does not classify errors: any exception raised by the wrapped
call is a failure. Its state is private to the instance and changes only
inside :meth:`CircuitBreaker.execute`.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from tollgate.exceptions import CircuitOpenError
from tollgate.models import CircuitSnapshot, CircuitState
from tollgate.observability import Observer, shielded


class CircuitBreaker:
    """Circuit breaker implementation.

    Args:
        threshold: Consecutive failures that open the circuit.
        reset_timeout: Seconds the circuit stays open before a probe.
        name: Label used in log lines.
        clock: Monotonic time source, injectable for tests.
        observer: Receives state-transition log lines.
    """

    def __init__(
        self,
        threshold: int = 5,
        reset_timeout: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        observer: Optional[Observer] = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._observer = shielded(observer)

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def snapshot(self) -> CircuitSnapshot:
        """Return a read-only copy of the current state."""
        return CircuitSnapshot(
            state=self._state,
            failure_count=self._failure_count,
            last_failure_at=self._last_failure_at,
            threshold=self.threshold,
            reset_timeout=self.reset_timeout,
        )

    async def execute(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run *fn* under breaker protection.

        Args:
            fn: Zero-argument coroutine factory.

        Returns:
            The result of ``await fn()``.

        Raises:
            CircuitOpenError: If the circuit is open (or a probe is already
                in flight); *fn* is not invoked.
            Exception: Whatever *fn* raised, after it was counted.
        """
        is_probe = self._admit()

        try:
            result = await fn()
        except asyncio.CancelledError:
            if is_probe:
                self._probe_in_flight = False
            raise
        except Exception:
            self._record_failure(is_probe)
            raise

        self._record_success(is_probe)
        return result

    def reset(self) -> None:
        """Force the breaker back to ``closed`` with a clean failure count."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at = None
        self._probe_in_flight = False

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _admit(self) -> bool:
        """Decide whether a call may proceed; return ``True`` for a probe."""
        if self._state == CircuitState.CLOSED:
            return False

        if self._state == CircuitState.OPEN:
            if not self._can_attempt_reset():
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is open; "
                    f"retry after {self._remaining_open():.1f}s"
                )
            self._state = CircuitState.HALF_OPEN
            self._observer.info(
                "Circuit breaker transitioning to half-open", {"breaker": self.name}
            )

        if self._probe_in_flight:
            raise CircuitOpenError(
                f"Circuit breaker '{self.name}' is half-open; probe already in flight"
            )
        self._probe_in_flight = True
        return True

    def _can_attempt_reset(self) -> bool:
        if self._last_failure_at is None:
            return True
        return self._clock() - self._last_failure_at >= self.reset_timeout

    def _remaining_open(self) -> float:
        if self._last_failure_at is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self._last_failure_at))

    def _record_success(self, is_probe: bool) -> None:
        if is_probe:
            self._probe_in_flight = False
            self._state = CircuitState.CLOSED
            self._observer.info(
                "Circuit breaker reset to closed after successful probe",
                {"breaker": self.name},
            )
        # A straggler admitted before the breaker opened must not clear the streak.
        if self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def _record_failure(self, is_probe: bool) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock()

        if is_probe:
            self._probe_in_flight = False
            self._state = CircuitState.OPEN
            self._observer.warning(
                "Circuit breaker probe failed; reopening",
                {"breaker": self.name, "failure_count": self._failure_count},
            )
        elif self._state == CircuitState.CLOSED and self._failure_count >= self.threshold:
            self._state = CircuitState.OPEN
            self._observer.warning(
                "Circuit breaker opened due to failures",
                {
                    "breaker": self.name,
                    "failure_count": self._failure_count,
                    "threshold": self.threshold,
                },
            )
