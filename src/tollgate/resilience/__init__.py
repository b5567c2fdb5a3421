"""Failure-isolation and admission-control primitives.

- :class:`ConcurrencyGate` -- FIFO-bounded concurrency.
- :class:`CircuitBreaker` -- three-state breaker that fast-fails while a
  backend is unhealthy.
- :class:`RetryPolicy` / :func:`is_retryable` -- transient-failure
  classification and exponential backoff.

Each primitive owns its state exclusively and is independent of HTTP
except for :func:`is_retryable`, which understands :mod:`httpx` errors.
"""

from tollgate.resilience.circuit_breaker import CircuitBreaker
from tollgate.resilience.gate import ConcurrencyGate
from tollgate.resilience.retry import RetryPolicy, is_retryable, is_retryable_status

__all__ = [
    "CircuitBreaker",
    "ConcurrencyGate",
    "RetryPolicy",
    "is_retryable",
    "is_retryable_status",
]
