"""Resilient, authenticated client for a JSON resource API.

:class:`ApiClient` is the single entry point application code uses to talk
to the remote API. Every call runs through the same pipeline::

    TokenProvider.get_token()          (may suspend during a renewal)
      -> ConcurrencyGate.run()         (may suspend while saturated)
        -> CircuitBreaker.execute()    (fails fast while the API is unhealthy)
          -> RetryPolicy.call()        (transient failures, 1 s / 2 s / 4 s)
            -> httpx.AsyncClient.request()

Callers receive either the parsed response body or a
:class:`~tollgate.exceptions.TollgateError` subclass; :mod:`httpx`
exceptions never escape. Each call, successful or not, reports its duration
and outcome to the injected :class:`~tollgate.observability.Observer`.

See Also:
    :mod:`tollgate.resilience` for the individual primitives.
"""

from __future__ import annotations

import json
import re
import time
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote

import httpx

from tollgate.auth.token_provider import TokenProvider
from tollgate.exceptions import HttpError, NetworkError, RequestError, TollgateError
from tollgate.models import ClientConfig
from tollgate.observability import Observer, shielded
from tollgate.resilience.circuit_breaker import CircuitBreaker
from tollgate.resilience.gate import ConcurrencyGate
from tollgate.resilience.retry import RetryPolicy, SleepFunc

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
_NUMERIC_RE = re.compile(r"^\d+$")
_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_HEX_ID_RE = re.compile(r"^[0-9a-fA-F]{16,}$")

_DETAIL_FIELDS = ("detail", "message", "error", "title")


class ApiClient:
    """Authenticated API client with concurrency limiting, circuit breaking and retry.

    One instance corresponds to one credential and one backend: its gate
    and breaker state are not shared with other instances.

    Args:
        config: Base URL, resilience limits and provider settings.
        token_provider: Supplies bearer tokens. Built from
            ``config.provider`` when omitted.
        observer: Receives per-call metrics and log lines. Discarded when
            omitted.
        transport: Optional :mod:`httpx` transport shared by resource calls
            and (for a default-built provider) token requests.
        sleep: Awaitable sleep used for retry backoff.
        clock: Monotonic time source for token expiry and breaker timing.
        gate: Pre-built concurrency gate.
        breaker: Pre-built circuit breaker.

    Example::

        async with ApiClient.from_env() as client:
            widget = await client.get("/widgets/{id}", path_params={"id": 42})
    """

    def __init__(
        self,
        config: ClientConfig,
        token_provider: Optional[TokenProvider] = None,
        *,
        observer: Optional[Observer] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[SleepFunc] = None,
        clock: Callable[[], float] = time.monotonic,
        gate: Optional[ConcurrencyGate] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self._config = config
        self._observer = shielded(observer)
        self._transport = transport
        self._base_url = build_base_url(config.base_url, config.api_prefix)

        self._token_provider = token_provider or TokenProvider(
            config.provider,
            transport=transport,
            observer=self._observer,
            clock=clock,
            sleep=sleep,
        )
        self._gate = gate or ConcurrencyGate(
            max_concurrency=config.max_concurrency,
            max_wait=config.gate_max_wait,
        )
        self._breaker = breaker or CircuitBreaker(
            threshold=config.circuit_threshold,
            reset_timeout=config.circuit_reset_timeout,
            name=self._base_url,
            clock=clock,
            observer=self._observer,
        )
        self._retry = RetryPolicy(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            sleep=sleep,
        )
        self._single_attempt = RetryPolicy(max_retries=0, sleep=sleep)
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config: ClientConfig, **kwargs: Any) -> ApiClient:
        """Build a client whose provider, gate and breaker all derive from *config*.

        Keyword arguments are forwarded to the constructor.
        """
        return cls(config, **kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **kwargs: Any) -> ApiClient:
        """Build a client from ``TOLLGATE_*`` environment variables.

        Raises:
            ConfigError: If a required variable is missing or invalid.
        """
        from tollgate.config import load_config_from_env

        return cls.from_config(load_config_from_env(environ), **kwargs)

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def token_provider(self) -> TokenProvider:
        return self._token_provider

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    # ------------------------------------------------------------------ #
    # Async context manager
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> ApiClient:
        self._http()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ #
    # Public request methods
    # ------------------------------------------------------------------ #

    async def get(
        self,
        path: str,
        body: Any = None,
        *,
        params: Optional[Mapping[str, Any]] = None,
        path_params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Send a GET request and return the parsed body."""
        return await self.request("GET", path, body, params=params, path_params=path_params)

    async def post(
        self,
        path: str,
        body: Any = None,
        *,
        params: Optional[Mapping[str, Any]] = None,
        path_params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Send a POST request with a JSON *body* and return the parsed body."""
        return await self.request("POST", path, body, params=params, path_params=path_params)

    async def put(
        self,
        path: str,
        body: Any = None,
        *,
        params: Optional[Mapping[str, Any]] = None,
        path_params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Send a PUT request with a JSON *body* and return the parsed body."""
        return await self.request("PUT", path, body, params=params, path_params=path_params)

    async def delete(
        self,
        path: str,
        body: Any = None,
        *,
        params: Optional[Mapping[str, Any]] = None,
        path_params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Send a DELETE request and return the parsed body (usually ``None``)."""
        return await self.request("DELETE", path, body, params=params, path_params=path_params)

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: Optional[Mapping[str, Any]] = None,
        path_params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Make an authenticated request through the full resilience pipeline.

        Args:
            method: HTTP verb.
            path: Path relative to the base URL. May contain ``{name}``
                placeholders filled from *path_params*.
            body: JSON-serialisable request body.
            params: Query parameters.
            path_params: Values for the placeholders in *path*. When given,
                the unexpanded template is used as the metrics path label.

        Returns:
            The decoded JSON body, the raw text when the body is not JSON,
            or ``None`` for an empty body.

        Raises:
            AuthError: No bearer token could be obtained.
            HttpError: The API answered with a non-2xx status.
            NetworkError: No response was received, or no request slot
                freed up within ``gate_max_wait``.
            CircuitOpenError: The breaker rejected the call.
            RequestError: A placeholder in *path* has no value, or *body*
                cannot be encoded as JSON. Raised before any I/O.
        """
        method = method.upper()
        url = expand_path(path, path_params or {})
        content = encode_body(body)
        label = path if path_params else logical_path(path)
        started = time.perf_counter()

        try:
            token = await self._token_provider.get_token()
            response = await self._gate.run(
                lambda: self._breaker.execute(
                    lambda: self._send_authenticated(method, url, token, content, params)
                )
            )
        except Exception as exc:
            error = self._normalize(exc, method, url)
            self._record_failure(method, label, error, started)
            if error is exc:
                raise
            raise error from exc

        self._record_success(method, label, response.status_code, started)
        return parse_body(response)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._config.request_timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def _send_authenticated(
        self,
        method: str,
        url: str,
        token: str,
        content: Optional[bytes],
        params: Optional[Mapping[str, Any]],
    ) -> httpx.Response:
        """Retried send; re-acquires the token and re-sends once after a 401."""
        try:
            return await self._send_retrying(method, url, token, content, params)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code != 401:
                raise
            self._observer.info(
                "Bearer token rejected, re-acquiring",
                {"method": method, "path": url},
            )
            self._token_provider.invalidate(token)
            token = await self._token_provider.get_token()
            return await self._send_retrying(method, url, token, content, params)

    async def _send_retrying(
        self,
        method: str,
        url: str,
        token: str,
        content: Optional[bytes],
        params: Optional[Mapping[str, Any]],
    ) -> httpx.Response:
        policy = self._retry
        if method == "POST" and not self._config.retry_non_idempotent:
            policy = self._single_attempt

        def on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            self._observer.warning(
                f"Retrying {method} {url} in {delay:g}s "
                f"(attempt {attempt}/{policy.max_retries})",
                {"error": _describe(exc)},
            )

        return await policy.call(
            lambda: self._send(method, url, token, content, params),
            on_retry=on_retry,
        )

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        content: Optional[bytes],
        params: Optional[Mapping[str, Any]],
    ) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        kwargs: dict[str, Any] = {"headers": headers}
        if params:
            kwargs["params"] = dict(params)
        if content is not None:
            kwargs["content"] = content

        response = await self._http().request(method, url, **kwargs)
        response.raise_for_status()
        return response

    def _normalize(self, exc: Exception, method: str, url: str) -> TollgateError:
        if isinstance(exc, TollgateError):
            return exc
        if isinstance(exc, httpx.HTTPStatusError):
            return HttpError(exc.response.status_code, error_detail(exc.response))
        if isinstance(exc, httpx.HTTPError):
            return NetworkError(f"{method} {url} failed: {_describe(exc)}")
        return TollgateError(f"{method} {url} failed: {_describe(exc)}")

    def _record_success(self, method: str, path: str, status: int, started: float) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        self._observer.record_metric(
            "api_request_duration_ms",
            duration_ms,
            {"method": method, "path": path, "status": str(status)},
        )
        self._observer.debug(
            f"{method} {path} -> {status}",
            {"duration_ms": round(duration_ms, 2)},
        )

    def _record_failure(
        self, method: str, path: str, error: TollgateError, started: float
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        status = str(error.status) if error.status is not None else "none"
        self._observer.record_metric(
            "api_request_duration_ms",
            duration_ms,
            {"method": method, "path": path, "status": status},
        )
        self._observer.record_metric(
            "api_errors_total", 1, {"method": method, "path": path, "kind": error.kind}
        )
        self._observer.error(
            f"{method} {path} failed",
            {
                "kind": error.kind,
                "status": error.status,
                "detail": error.detail,
                "duration_ms": round(duration_ms, 2),
            },
        )


# ------------------------------------------------------------------ #
# Module-level helpers
# ------------------------------------------------------------------ #


def build_base_url(base_url: str, api_prefix: Optional[str] = None) -> str:
    """Strip trailing slashes and append *api_prefix* unless already present.

    >>> build_base_url("http://localhost:5000/", "/api")
    'http://localhost:5000/api'
    >>> build_base_url("http://localhost:5000/api", "api")
    'http://localhost:5000/api'
    """
    base = base_url.rstrip("/")
    if not api_prefix:
        return base
    prefix = "/" + api_prefix.strip("/")
    if prefix == "/" or base.endswith(prefix):
        return base
    return base + prefix


def expand_path(template: str, values: Mapping[str, Any]) -> str:
    """Substitute ``{name}`` placeholders with URL-quoted *values*.

    Raises:
        RequestError: If a placeholder has no value.
    """

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in values:
            raise RequestError(f"Missing path parameter '{name}' for '{template}'")
        return quote(str(values[name]), safe="")

    return _PLACEHOLDER_RE.sub(_sub, template)


def logical_path(path: str) -> str:
    """Collapse identifier segments so metric labels stay low-cardinality.

    Numeric, UUID and long hex segments become ``{id}``; the query string is
    dropped.

    >>> logical_path("/widgets/42/parts/9f1c2a3b4d5e6f708192a3b4")
    '/widgets/{id}/parts/{id}'
    """
    bare = path.split("?", 1)[0]
    segments = []
    for segment in bare.split("/"):
        if _NUMERIC_RE.match(segment) or _UUID_RE.match(segment) or _HEX_ID_RE.match(segment):
            segments.append("{id}")
        else:
            segments.append(segment)
    return "/".join(segments)


def encode_body(body: Any) -> Optional[bytes]:
    """Serialise *body* to UTF-8 JSON; ``None`` means no request body.

    Raises:
        RequestError: If *body* is not JSON-serialisable.
    """
    if body is None:
        return None
    try:
        return json.dumps(body, ensure_ascii=False, allow_nan=False).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise RequestError(f"Request body is not JSON-serialisable: {exc}") from exc


def parse_body(response: httpx.Response) -> Any:
    """Decode JSON, fall back to text, ``None`` for an empty body."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def error_detail(response: httpx.Response) -> str:
    """Extract a human-readable message from an error response body."""
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] if response.text else ""

    if isinstance(payload, dict):
        for field in _DETAIL_FIELDS:
            value = payload.get(field)
            if value:
                return str(value)
        return ""
    return str(payload)[:200]


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
