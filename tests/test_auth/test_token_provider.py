"""Tests for the OAuth2 client-credentials TokenProvider."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Union
from urllib.parse import parse_qs

import httpx
import pytest

from tollgate.auth import TokenProvider
from tollgate.exceptions import AuthError
from tollgate.models import ProviderConfig
from tollgate.observability import ObservabilityProvider
from tollgate.output import OutputManager

TOKEN_URL = "https://id.example.com/realms/acme/protocol/openid-connect/token"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_token_response(
    access_token: str = "tok-1",
    expires_in: Any = 3600,
    refresh_token: str | None = None,
) -> dict[str, Any]:
    """Build a token endpoint JSON payload."""
    data: dict[str, Any] = {"access_token": access_token, "token_type": "Bearer"}
    if expires_in is not None:
        data["expires_in"] = expires_in
    if refresh_token is not None:
        data["refresh_token"] = refresh_token
    return data


Reply = Union[httpx.Response, Exception, dict[str, Any]]


class TokenEndpoint:
    """Scripted token endpoint recording every form it receives.

    Each scripted reply is consumed in order; the last one repeats. A dict
    is returned as a 200 JSON response, an exception is raised as a
    transport failure.
    """

    def __init__(self, *replies: Reply, delay_ticks: int = 0) -> None:
        self.replies = list(replies) or [_make_token_response()]
        self.forms: list[dict[str, str]] = []
        self.headers: list[httpx.Headers] = []
        self.delay_ticks = delay_ticks

    @property
    def calls(self) -> int:
        return len(self.forms)

    def grants(self) -> list[str]:
        return [form["grant_type"] for form in self.forms]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        self.forms.append(form)
        self.headers.append(request.headers)
        for _ in range(self.delay_ticks):
            await asyncio.sleep(0)

        reply = self.replies[0] if len(self.replies) == 1 else self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return httpx.Response(200, json=reply)
        # Fresh copy: a repeated reply must not share stream state.
        return httpx.Response(reply.status_code, headers=reply.headers, content=reply.content)


def _make_provider(
    endpoint: Callable[[httpx.Request], Any],
    clock: Callable[[], float],
    sleep: Any,
    **config: Any,
) -> TokenProvider:
    defaults: dict[str, Any] = {"token_url": TOKEN_URL, "client_id": "c1", "client_secret": "s1"}
    defaults.update(config)
    return TokenProvider(
        ProviderConfig(**defaults),
        transport=httpx.MockTransport(endpoint),
        clock=clock,
        sleep=sleep,
    )


# ---------------------------------------------------------------------------
# Acquisition
# ---------------------------------------------------------------------------


class TestAcquisition:
    @pytest.mark.asyncio
    async def test_first_call_acquires_with_client_credentials(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(_make_token_response("tok-1"))
        provider = _make_provider(endpoint, clock, sleep)

        token = await provider.get_token()

        assert token == "tok-1"
        assert endpoint.calls == 1
        assert endpoint.forms[0] == {
            "grant_type": "client_credentials",
            "client_id": "c1",
            "client_secret": "s1",
        }
        assert endpoint.headers[0]["accept"] == "application/json"
        assert endpoint.headers[0]["content-type"] == "application/x-www-form-urlencoded"

    @pytest.mark.asyncio
    async def test_scope_is_sent_when_configured(self, clock, sleep) -> None:
        endpoint = TokenEndpoint()
        provider = _make_provider(endpoint, clock, sleep, scope="widgets:read widgets:write")

        await provider.get_token()

        assert endpoint.forms[0]["scope"] == "widgets:read widgets:write"

    @pytest.mark.asyncio
    async def test_valid_token_is_reused(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(_make_token_response("tok-1", expires_in=3600))
        provider = _make_provider(endpoint, clock, sleep)

        first = await provider.get_token()
        clock.advance(3000)  # still outside the 300 s buffer
        second = await provider.get_token()

        assert first == second == "tok-1"
        assert endpoint.calls == 1

    @pytest.mark.asyncio
    async def test_expires_at_derives_from_expires_in(self, clock, sleep) -> None:
        provider = _make_provider(TokenEndpoint(_make_token_response(expires_in=120)), clock, sleep)

        await provider.get_token()

        assert provider.state is not None
        assert provider.state.expires_at == clock.now + 120

    @pytest.mark.asyncio
    async def test_string_expires_in_is_accepted(self, clock, sleep) -> None:
        provider = _make_provider(TokenEndpoint(_make_token_response(expires_in="600")), clock, sleep)

        await provider.get_token()

        assert provider.state.expires_at == clock.now + 600

    @pytest.mark.asyncio
    async def test_missing_expires_in_defaults_to_300_seconds(self, clock, sleep) -> None:
        provider = _make_provider(TokenEndpoint(_make_token_response(expires_in=None)), clock, sleep)

        await provider.get_token()

        assert provider.state.expires_at == clock.now + 300

    @pytest.mark.asyncio
    async def test_unknown_expiry_is_never_refreshed_proactively(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(_make_token_response("tok-1", expires_in=None))
        provider = _make_provider(endpoint, clock, sleep, default_expires_in=None)

        await provider.get_token()
        clock.advance(10 * 24 * 3600)
        token = await provider.get_token()

        assert token == "tok-1"
        assert provider.state.expires_at is None
        assert endpoint.calls == 1


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestAcquisitionRetry:
    @pytest.mark.asyncio
    async def test_retries_503_with_exponential_backoff(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(503),
            _make_token_response("tok-after-retry"),
        )
        provider = _make_provider(endpoint, clock, sleep)

        token = await provider.get_token()

        assert token == "tok-after-retry"
        assert endpoint.calls == 4
        assert sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_retries_429_and_transport_errors(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(
            httpx.Response(429),
            httpx.ConnectError("connection refused"),
            _make_token_response("tok-1"),
        )
        provider = _make_provider(endpoint, clock, sleep)

        assert await provider.get_token() == "tok-1"
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_auth_error(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(httpx.Response(503, text="maintenance"))
        provider = _make_provider(endpoint, clock, sleep)

        with pytest.raises(AuthError) as exc_info:
            await provider.get_token()

        assert exc_info.value.status == 503
        assert exc_info.value.kind == "auth"
        assert endpoint.calls == 4
        assert sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhausted_transport_errors_raise_auth_error(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(httpx.ConnectTimeout("timed out"))
        provider = _make_provider(endpoint, clock, sleep)

        with pytest.raises(AuthError) as exc_info:
            await provider.get_token()

        assert exc_info.value.status is None
        assert isinstance(exc_info.value.__cause__, httpx.ConnectTimeout)

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(httpx.Response(401, json={"error": "invalid_client"}))
        provider = _make_provider(endpoint, clock, sleep)

        with pytest.raises(AuthError) as exc_info:
            await provider.get_token()

        assert exc_info.value.status == 401
        assert endpoint.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_missing_access_token_is_not_retried(self, clock, sleep) -> None:
        endpoint = TokenEndpoint({"token_type": "Bearer", "expires_in": 300})
        provider = _make_provider(endpoint, clock, sleep)

        with pytest.raises(AuthError, match="access_token"):
            await provider.get_token()

        assert endpoint.calls == 1
        assert provider.state is None

    @pytest.mark.asyncio
    async def test_non_json_body_is_not_retried(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(httpx.Response(200, text="<html>login</html>"))
        provider = _make_provider(endpoint, clock, sleep)

        with pytest.raises(AuthError, match="non-JSON"):
            await provider.get_token()

        assert endpoint.calls == 1

    @pytest.mark.asyncio
    async def test_non_string_refresh_token_is_an_auth_error(self, clock, sleep) -> None:
        endpoint = TokenEndpoint({"access_token": "t", "refresh_token": 123, "expires_in": 3600})
        provider = _make_provider(endpoint, clock, sleep)

        with pytest.raises(AuthError, match="refresh_token"):
            await provider.get_token()

        assert endpoint.calls == 1
        assert provider.state is None


# ---------------------------------------------------------------------------
# Renewal
# ---------------------------------------------------------------------------


class TestRenewal:
    @pytest.mark.asyncio
    async def test_proactive_refresh_inside_buffer(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(
            _make_token_response("tok-1", expires_in=480),
            _make_token_response("tok-2", expires_in=480),
        )
        provider = _make_provider(endpoint, clock, sleep)
        await provider.get_token()

        clock.advance(300)  # expires_at is now 3 minutes away
        token = await provider.get_token()

        assert token == "tok-2"
        assert endpoint.calls == 2

    @pytest.mark.asyncio
    async def test_refresh_grant_used_when_refresh_token_present(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(
            _make_token_response("tok-1", expires_in=600, refresh_token="rt-1"),
            _make_token_response("tok-2", expires_in=600, refresh_token="rt-2"),
        )
        provider = _make_provider(endpoint, clock, sleep)
        await provider.get_token()

        clock.advance(400)
        token = await provider.get_token()

        assert token == "tok-2"
        assert endpoint.grants() == ["client_credentials", "refresh_token"]
        assert endpoint.forms[1]["refresh_token"] == "rt-1"
        assert endpoint.forms[1]["client_id"] == "c1"
        assert provider.state.refresh_token == "rt-2"

    @pytest.mark.asyncio
    async def test_refresh_failure_falls_back_to_acquisition(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(
            _make_token_response("tok-1", expires_in=600, refresh_token="rt-1"),
            httpx.Response(400, json={"error": "invalid_grant"}),
            _make_token_response("tok-fresh", expires_in=600),
        )
        provider = _make_provider(endpoint, clock, sleep)
        await provider.get_token()

        clock.advance(400)
        token = await provider.get_token()

        assert token == "tok-fresh"
        assert endpoint.grants() == ["client_credentials", "refresh_token", "client_credentials"]

    @pytest.mark.asyncio
    async def test_malformed_refresh_response_falls_back_to_acquisition(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(
            _make_token_response("tok-1", expires_in=600, refresh_token="rt-1"),
            {"access_token": "tok-2", "refresh_token": 123, "expires_in": 600},
            _make_token_response("tok-fresh", expires_in=600),
        )
        provider = _make_provider(endpoint, clock, sleep)
        await provider.get_token()

        clock.advance(400)
        token = await provider.get_token()

        assert token == "tok-fresh"
        assert endpoint.grants() == ["client_credentials", "refresh_token", "client_credentials"]
        assert provider.state.refresh_token is None

    @pytest.mark.asyncio
    async def test_refresh_without_new_refresh_token_keeps_old_one(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(
            _make_token_response("tok-1", expires_in=600, refresh_token="rt-1"),
            _make_token_response("tok-2", expires_in=600),
        )
        provider = _make_provider(endpoint, clock, sleep)
        await provider.get_token()

        clock.advance(400)
        await provider.get_token()

        assert provider.state.access_token == "tok-2"
        assert provider.state.refresh_token == "rt-1"

    @pytest.mark.asyncio
    async def test_failed_proactive_renewal_keeps_valid_token(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(
            _make_token_response("tok-1", expires_in=480),
            httpx.Response(400, json={"error": "unauthorized_client"}),
        )
        provider = _make_provider(endpoint, clock, sleep)
        await provider.get_token()

        clock.advance(300)
        token = await provider.get_token()

        assert token == "tok-1"
        assert provider.state.access_token == "tok-1"

    @pytest.mark.asyncio
    async def test_failed_hard_renewal_raises(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(
            _make_token_response("tok-1", expires_in=480),
            httpx.Response(400, json={"error": "unauthorized_client"}),
        )
        provider = _make_provider(endpoint, clock, sleep)
        await provider.get_token()

        clock.advance(600)  # past expiry
        with pytest.raises(AuthError):
            await provider.get_token()

        # The stale state is left in place, never silently returned.
        assert provider.state.access_token == "tok-1"


# ---------------------------------------------------------------------------
# Single flight
# ---------------------------------------------------------------------------


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_acquisition(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(_make_token_response("tok-shared"), delay_ticks=5)
        provider = _make_provider(endpoint, clock, sleep)

        tokens = await asyncio.gather(*(provider.get_token() for _ in range(10)))

        assert endpoint.calls == 1
        assert set(tokens) == {"tok-shared"}

    @pytest.mark.asyncio
    async def test_concurrent_callers_on_expired_token_share_one_renewal(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(
            _make_token_response("tok-1", expires_in=600),
            _make_token_response("tok-2", expires_in=600),
            delay_ticks=5,
        )
        provider = _make_provider(endpoint, clock, sleep)
        await provider.get_token()

        clock.advance(700)
        tokens = await asyncio.gather(*(provider.get_token() for _ in range(8)))

        assert endpoint.calls == 2
        assert tokens == ["tok-2"] * 8

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_the_same_failure(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(httpx.Response(403), delay_ticks=3)
        provider = _make_provider(endpoint, clock, sleep)

        results = await asyncio.gather(
            *(provider.get_token() for _ in range(4)), return_exceptions=True
        )

        assert endpoint.calls == 1
        assert all(isinstance(result, AuthError) for result in results)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_renewal(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(_make_token_response("tok-1"), delay_ticks=10)
        provider = _make_provider(endpoint, clock, sleep)

        doomed = asyncio.ensure_future(provider.get_token())
        survivor = asyncio.ensure_future(provider.get_token())
        await asyncio.sleep(0)
        doomed.cancel()

        assert await survivor == "tok-1"
        assert doomed.cancelled()
        assert endpoint.calls == 1

    @pytest.mark.asyncio
    async def test_new_renewal_can_start_after_previous_failed(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(httpx.Response(400), _make_token_response("tok-ok"))
        provider = _make_provider(endpoint, clock, sleep)

        with pytest.raises(AuthError):
            await provider.get_token()
        await asyncio.sleep(0)  # let the done-callback clear the in-flight task

        assert await provider.get_token() == "tok-ok"
        assert not provider.renewal_in_progress


# ---------------------------------------------------------------------------
# Inspection and invalidation
# ---------------------------------------------------------------------------


class TestInspection:
    @pytest.mark.asyncio
    async def test_invalidate_forces_reacquisition(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(_make_token_response("tok-1"), _make_token_response("tok-2"))
        provider = _make_provider(endpoint, clock, sleep)
        await provider.get_token()

        provider.invalidate("tok-1")

        assert provider.state is None
        assert await provider.get_token() == "tok-2"

    @pytest.mark.asyncio
    async def test_invalidate_ignores_superseded_token(self, clock, sleep) -> None:
        provider = _make_provider(TokenEndpoint(_make_token_response("tok-2")), clock, sleep)
        await provider.get_token()

        provider.invalidate("tok-1")

        assert provider.state.access_token == "tok-2"

    @pytest.mark.asyncio
    async def test_clear_token(self, clock, sleep) -> None:
        provider = _make_provider(TokenEndpoint(), clock, sleep)
        await provider.get_token()

        provider.clear_token()

        assert provider.state is None
        assert provider.token_info() is None

    @pytest.mark.asyncio
    async def test_token_info(self, clock, sleep) -> None:
        endpoint = TokenEndpoint(_make_token_response(expires_in=600, refresh_token="rt-1"))
        provider = _make_provider(endpoint, clock, sleep)
        await provider.get_token()

        info = provider.token_info()
        assert info.expires_at == clock.now + 600
        assert info.has_refresh_token is True
        assert info.is_expiring_soon is False

        clock.advance(350)
        assert provider.token_info().is_expiring_soon is True

    @pytest.mark.asyncio
    async def test_auth_headers(self, clock, sleep) -> None:
        provider = _make_provider(TokenEndpoint(_make_token_response("tok-1")), clock, sleep)

        assert await provider.auth_headers() == {"Authorization": "Bearer tok-1"}

    def test_provider_config_repr_hides_secret(self) -> None:
        config = ProviderConfig(token_url=TOKEN_URL, client_id="c1", client_secret="s3cr3t")
        assert "s3cr3t" not in repr(config)


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------


class TestTokenMetrics:
    @pytest.mark.asyncio
    async def test_success_and_error_metrics(self, clock, sleep) -> None:
        observer = ObservabilityProvider(OutputManager(quiet=True))
        endpoint = TokenEndpoint(httpx.Response(502), _make_token_response("tok-1"))
        provider = TokenProvider(
            ProviderConfig(token_url=TOKEN_URL, client_id="c1", client_secret="s1"),
            transport=httpx.MockTransport(endpoint),
            observer=observer,
            clock=clock,
            sleep=sleep,
        )

        await provider.get_token()

        summary = observer.metrics_summary()
        assert summary["token_request_success_total"]["count"] == 1
        assert summary["token_request_errors_total"]["count"] == 1
        assert any("Retrying token request" in entry.message for entry in observer.recent_logs())

    @pytest.mark.asyncio
    async def test_raising_observer_does_not_break_acquisition(self, clock, sleep) -> None:
        class ExplodingObserver(ObservabilityProvider):
            def record_metric(self, name, value, labels=None):
                raise RuntimeError("metrics backend down")

            def log(self, level, message, context=None):
                raise RuntimeError("log backend down")

        provider = TokenProvider(
            ProviderConfig(token_url=TOKEN_URL, client_id="c1", client_secret="s1"),
            transport=httpx.MockTransport(TokenEndpoint(_make_token_response("tok-1"))),
            observer=ExplodingObserver(),
            clock=clock,
            sleep=sleep,
        )

        assert await provider.get_token() == "tok-1"
