"""OAuth2 Client Credentials token lifecycle.

This module provides :class:`TokenProvider`, which obtains a bearer token
with the Client Credentials grant (:rfc:`6749` section 4.4) and keeps it
fresh for as long as the process runs:

* **Acquisition** -- ``grant_type=client_credentials`` POSTed form-encoded
  to the token endpoint. Transient failures (no response, ``429``,
  ``5xx``) are retried with exponential backoff; anything else fails at
  once.
* **Proactive refresh** -- once the token is within ``refresh_buffer``
  seconds of expiry (five minutes by default) the next
  :meth:`TokenProvider.get_token` call renews it before returning. A
  refresh token, when the issuer supplied one, is tried first
  (``grant_type=refresh_token``); any refresh failure falls back to a full
  acquisition.
* **Single flight** -- at most one renewal runs at a time. Every caller
  that needs a renewal while one is in progress awaits the same
  :class:`asyncio.Task` and receives the same token, so a burst of
  concurrent API calls produces exactly one token request.

Tokens live only in memory; nothing is persisted across restarts.

See Also:
    :class:`tollgate.client.ApiClient`, which attaches the token to every
    resource call and re-acquires it reactively after a ``401``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

import httpx

from tollgate.exceptions import AuthError
from tollgate.models import ProviderConfig, TokenInfo, TokenState
from tollgate.observability import Observer, shielded
from tollgate.resilience.retry import RetryPolicy, SleepFunc


class TokenProvider:
    """Own the bearer token for a single client identity.

    Args:
        config: Token endpoint and client credentials.
        transport: Optional :mod:`httpx` transport (e.g.
            :class:`httpx.MockTransport` in tests) used for token requests.
        observer: Receives token lifecycle logs and metrics.
        clock: Monotonic time source used for expiry bookkeeping.
        sleep: Awaitable sleep used between acquisition retries.

    Example::

        provider = TokenProvider(ProviderConfig(
            token_url="https://id.example.com/token",
            client_id="c1",
            client_secret="s1",
        ))
        token = await provider.get_token()
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        observer: Optional[Observer] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._observer = shielded(observer)
        self._clock = clock
        self._retry = RetryPolicy(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            sleep=sleep,
        )
        self._state: Optional[TokenState] = None
        self._inflight: Optional[asyncio.Task[TokenState]] = None

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def state(self) -> Optional[TokenState]:
        """The current token state, or ``None`` before the first acquisition."""
        return self._state

    @property
    def renewal_in_progress(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def get_token(self) -> str:
        """Return a valid access token, acquiring or renewing it if needed.

        Returns immediately (without suspending) while the current token is
        outside the renewal buffer.

        Returns:
            The bearer access token string.

        Raises:
            AuthError: If no token was ever obtained, or the current token
                has expired and could not be renewed.
        """
        state = self._state
        if state is not None and not state.needs_renewal(self._clock(), self._config.refresh_buffer):
            return state.access_token
        state = await self._renew()
        return state.access_token

    async def auth_headers(self) -> dict[str, str]:
        """Return ``{"Authorization": "Bearer <token>"}`` for the current token."""
        token = await self.get_token()
        return {"Authorization": f"Bearer {token}"}

    def invalidate(self, token: Optional[str] = None) -> None:
        """Forget the current token so the next :meth:`get_token` re-acquires.

        Args:
            token: When given, the state is only dropped if it still holds
                this access token. A token that was already replaced by a
                concurrent renewal is left alone.
        """
        if self._state is None:
            return
        if token is not None and self._state.access_token != token:
            return
        self._state = None
        self._observer.debug("Token invalidated")

    def clear_token(self) -> None:
        """Drop the current token unconditionally."""
        self._state = None
        self._observer.debug("Token cleared")

    def token_info(self) -> Optional[TokenInfo]:
        """Describe the current token without exposing it.

        Returns:
            A :class:`~tollgate.models.TokenInfo`, or ``None`` when no token
            has been obtained yet.
        """
        state = self._state
        if state is None:
            return None
        return TokenInfo(
            expires_at=state.expires_at,
            is_expiring_soon=state.needs_renewal(self._clock(), self._config.refresh_buffer),
            has_refresh_token=state.refresh_token is not None,
        )

    # ------------------------------------------------------------------ #
    # Renewal coordination
    # ------------------------------------------------------------------ #

    async def _renew(self) -> TokenState:
        """Join the in-flight renewal, starting one if none is running."""
        previous = self._state
        if self._inflight is None:
            task = asyncio.ensure_future(self._run_renewal(previous))
            task.add_done_callback(self._renewal_done)
            self._inflight = task

        try:
            # Shielded: a cancelled waiter must not cancel the shared renewal.
            return await asyncio.shield(self._inflight)
        except AuthError as exc:
            if previous is not None and not previous.is_expired(self._clock()):
                self._observer.warning(
                    "Proactive token renewal failed; keeping current token",
                    {"error": exc.detail, "expires_at": previous.expires_at},
                )
                return previous
            raise

    def _renewal_done(self, task: asyncio.Task[TokenState]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            task.exception()  # mark retrieved; waiters re-raise it themselves

    async def _run_renewal(self, previous: Optional[TokenState]) -> TokenState:
        if previous is None:
            state = await self._acquire()
        elif previous.refresh_token is None:
            self._observer.debug("No refresh token available, requesting new token")
            state = await self._acquire()
        else:
            try:
                state = await self._refresh(previous.refresh_token)
            except AuthError as exc:
                self._observer.warning(
                    "Token refresh failed, requesting new token",
                    {"error": exc.detail, "status": exc.status},
                )
                self._observer.record_metric(
                    "token_refresh_errors_total", 1, {"error_type": _error_type(exc.status)}
                )
                state = await self._acquire()

        self._state = state
        return state

    # ------------------------------------------------------------------ #
    # Grants
    # ------------------------------------------------------------------ #

    async def _acquire(self) -> TokenState:
        """Client-credentials grant with retry on transient failures."""
        data: dict[str, str] = {
            "grant_type": "client_credentials",
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }
        if self._config.scope:
            data["scope"] = self._config.scope

        self._observer.debug(
            "Requesting new token",
            {"token_url": self._config.token_url, "client_id": self._config.client_id},
        )

        def on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            self._observer.warning(
                f"Retrying token request in {delay:g}s "
                f"(attempt {attempt}/{self._retry.max_retries})",
                {"error": str(exc), "status": _status_of(exc)},
            )
            self._observer.record_metric(
                "token_request_errors_total", 1, {"error_type": _error_type(_status_of(exc))}
            )

        try:
            payload = await self._retry.call(lambda: self._post_token(data), on_retry=on_retry)
            state = self._state_from_payload(payload)
        except (httpx.HTTPError, AuthError) as exc:
            status = _status_of(exc)
            self._observer.error(
                "Failed to obtain token", {"error": str(exc), "status": status}
            )
            self._observer.record_metric(
                "token_request_errors_total", 1, {"error_type": _error_type(status)}
            )
            if isinstance(exc, AuthError):
                raise
            if isinstance(exc, httpx.HTTPStatusError):
                raise AuthError(
                    f"Token request failed with status {status}: {exc.response.text[:200]}",
                    status=status,
                ) from exc
            raise AuthError(f"Token request failed: {exc}") from exc

        self._observer.info(
            "Token obtained successfully",
            {"expires_in": _lifetime(state, self._clock())},
        )
        self._observer.record_metric("token_request_success_total", 1)
        lifetime = _lifetime(state, self._clock())
        if lifetime is not None:
            self._observer.record_metric("token_expiry_seconds", lifetime)
        return state

    async def _refresh(self, refresh_token: str) -> TokenState:
        """Refresh-token grant; a single attempt, any failure is an :class:`AuthError`."""
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }
        self._observer.debug("Refreshing token using refresh_token")

        try:
            payload = await self._post_token(data)
        except httpx.HTTPStatusError as exc:
            raise AuthError(
                f"Token refresh failed with status {exc.response.status_code}",
                status=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise AuthError(f"Token refresh failed: {exc}") from exc

        state = self._state_from_payload(payload, previous_refresh_token=refresh_token)
        self._observer.info(
            "Token refreshed successfully",
            {"expires_in": _lifetime(state, self._clock())},
        )
        self._observer.record_metric("token_refresh_success_total", 1)
        return state

    async def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        """POST *data* form-encoded to the token endpoint and return the JSON body.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response.
            httpx.TransportError: When no response was received.
            AuthError: When a 2xx response is not a JSON object.
        """
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self._config.token_timeout,
        ) as client:
            response = await client.post(
                self._config.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Token endpoint returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise AuthError("Token endpoint returned an unexpected JSON payload")
        return payload

    def _state_from_payload(
        self,
        payload: dict[str, Any],
        previous_refresh_token: Optional[str] = None,
    ) -> TokenState:
        access_token = payload.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise AuthError("Token response missing 'access_token' field")

        refresh_token = payload.get("refresh_token")
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise AuthError("Token response has a non-string 'refresh_token' field")

        expires_in = _parse_expires_in(payload.get("expires_in"))
        if expires_in is None:
            expires_in = self._config.default_expires_in

        return TokenState(
            access_token=access_token,
            refresh_token=refresh_token or previous_refresh_token,
            expires_at=None if expires_in is None else self._clock() + expires_in,
        )


# ------------------------------------------------------------------ #
# Module-level helpers
# ------------------------------------------------------------------ #


def _parse_expires_in(value: Any) -> Optional[float]:
    """Coerce the issuer's ``expires_in`` to seconds; ``None`` if absent or invalid."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


def _status_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    if isinstance(exc, AuthError):
        return exc.status
    return None


def _error_type(status: Optional[int]) -> str:
    return str(status) if status is not None else "unknown"


def _lifetime(state: TokenState, now: float) -> Optional[float]:
    if state.expires_at is None:
        return None
    return round(state.expires_at - now, 3)
