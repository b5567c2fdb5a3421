"""Exception hierarchy for tollgate.

All exceptions inherit from :class:`TollgateError`, which carries the three
fields every failure crossing the public boundary exposes: a ``kind``
discriminator, an optional HTTP ``status``, and a human-readable ``detail``.
Callers branch on ``kind`` (or on the subclass) to decide whether to surface
the failure, retry at a higher level, or degrade gracefully -- they never see
:mod:`httpx` exception types.

Subclass hierarchy::

    TollgateError          (kind "error")
    +-- AuthError          (kind "auth")
    +-- NetworkError       (kind "network")
    |   +-- GateTimeoutError
    +-- HttpError          (kind "http", status always set)
    +-- CircuitOpenError   (kind "circuit_open")
    +-- ConfigError        (kind "config")
    +-- RequestError       (kind "request")
"""

from __future__ import annotations

from typing import Any, Optional


class TollgateError(Exception):
    """Base exception for all tollgate errors.

    Every subclass sets a class-level ``kind`` string. The constructor
    accepts an optional ``status`` for failures that carry an HTTP status
    code.

    Args:
        detail: Human-readable error description.
        status: HTTP status code associated with the failure, if any.
    """

    kind: str = "error"
    title: str = "Unexpected error"

    def __init__(self, detail: str, status: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a problem-details style mapping.

        Returns:
            A dict with ``type``, ``kind``, ``title``, ``status`` and
            ``detail`` keys, suitable for JSON serialisation.
        """
        return {
            "type": f"tollgate:{self.kind}",
            "kind": self.kind,
            "title": self.title,
            "status": self.status,
            "detail": self.detail,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind!r}, status={self.status!r}, detail={self.detail!r})"


class AuthError(TollgateError):
    """Raised when no bearer credential can be obtained (missing, rejected, or retries exhausted)."""

    kind = "auth"
    title = "Authentication failed"


class NetworkError(TollgateError):
    """Raised when no response was received from the remote API (connect error, timeout)."""

    kind = "network"
    title = "Network error"


class GateTimeoutError(NetworkError):
    """Raised when a caller waits longer than ``max_wait`` for a concurrency slot."""

    title = "Timed out waiting for a request slot"


class HttpError(TollgateError):
    """Raised when the remote API answers with a non-2xx status.

    Args:
        status: The HTTP status code.
        detail: Error detail parsed from the response body, or raw text.
    """

    kind = "http"
    title = "HTTP error"

    def __init__(self, status: int, detail: str = ""):
        super().__init__(detail or f"HTTP {status}", status=status)

    @property
    def is_client_error(self) -> bool:
        """Whether the status is in the 4xx range."""
        return self.status is not None and 400 <= self.status < 500


class CircuitOpenError(TollgateError):
    """Raised when the circuit breaker rejects a call without attempting transport."""

    kind = "circuit_open"
    title = "Circuit open"


class ConfigError(TollgateError):
    """Raised for configuration problems (missing variables, invalid JSON, bad credential sources)."""

    kind = "config"
    title = "Configuration error"


class RequestError(TollgateError):
    """Raised before any I/O when a call cannot be built (missing path parameter, unencodable body).

    These are caller mistakes: they never reach the circuit breaker or the
    retry policy.
    """

    kind = "request"
    title = "Invalid request"
