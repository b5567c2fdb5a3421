"""Retry classification and exponential-backoff retry loop.

A failed attempt is retried only when it is *transient*:

* no response was received at all (:class:`httpx.TransportError` --
  connect failures, timeouts, protocol errors), or
* the server answered ``429 Too Many Requests`` or any ``5xx`` status
  (:class:`httpx.HTTPStatusError`).

Every other failure -- including all other ``4xx`` responses -- is final.
The delay before retry *n* is ``base_delay * 2 ** (n - 1)``: 1 s, 2 s, 4 s
with the defaults.

The same :class:`RetryPolicy` drives token acquisition in
:mod:`tollgate.auth.token_provider` and resource calls in
:mod:`tollgate.client.api_client`.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx

SleepFunc = Callable[[float], Awaitable[Any]]
RetryCallback = Callable[[int, float, BaseException], None]


def is_retryable_status(status: int) -> bool:
    """Return ``True`` for ``429`` and every ``5xx`` status."""
    return status == 429 or 500 <= status <= 599


def is_retryable(exc: BaseException) -> bool:
    """Decide whether a failed attempt should be retried.

    Args:
        exc: The exception raised by the attempt.

    Returns:
        ``True`` when no response was received or the response status is
        ``429`` / ``5xx``; ``False`` otherwise.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        return is_retryable_status(exc.response.status_code)
    return isinstance(exc, httpx.TransportError)


class RetryPolicy:
    """Bounded exponential-backoff retry.

    Args:
        max_retries: Additional attempts after the first one.
        base_delay: Delay in seconds before the first retry; doubles on each
            subsequent retry.
        classify: Predicate deciding whether an exception is retryable.
        sleep: Awaitable sleep function, injectable for tests.

    Example::

        policy = RetryPolicy(max_retries=3)
        response = await policy.call(lambda: client.get("/widgets"))
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        classify: Callable[[BaseException], bool] = is_retryable,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._classify = classify
        self._sleep = sleep if sleep is not None else asyncio.sleep

    @property
    def max_attempts(self) -> int:
        """Total attempts including the first one."""
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (1-based)."""
        return self.base_delay * (2 ** (attempt - 1))

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        """Whether a failure on retry number *attempt* - 1 earns another try."""
        return attempt <= self.max_retries and self._classify(exc)

    async def call(
        self,
        fn: Callable[[], Awaitable[Any]],
        *,
        on_retry: Optional[RetryCallback] = None,
    ) -> Any:
        """Run *fn*, retrying transient failures.

        Args:
            fn: Zero-argument coroutine factory; called once per attempt.
            on_retry: Called as ``on_retry(attempt, delay, exc)`` before each
                backoff sleep.

        Returns:
            Whatever *fn* returns on its first successful attempt.

        Raises:
            The last exception raised by *fn*, unchanged, once it is
            classified non-retryable or the retry budget is spent.
        """
        attempt = 0
        while True:
            try:
                return await fn()
            except Exception as exc:
                attempt += 1
                if not self.should_retry(exc, attempt):
                    raise
                delay = self.delay_for(attempt)
                if on_retry is not None:
                    on_retry(attempt, delay, exc)
                await self._sleep(delay)
