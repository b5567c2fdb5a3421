"""Shared test fixtures for tollgate.

Provides a controllable clock, a sleep that records (instead of waiting
for) backoff delays, and ready-made configuration models. These fixtures
are automatically discovered by pytest and available to all test modules
without explicit imports.
"""

from __future__ import annotations

import asyncio

import pytest

from tollgate.models import ClientConfig, ProviderConfig

TOKEN_URL = "https://id.example.com/realms/acme/protocol/openid-connect/token"
BASE_URL = "https://api.example.com"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Awaitable sleep replacement that records delays and advances a clock.

    It still yields to the event loop once so that concurrently scheduled
    tasks get a chance to run, as they would during a real sleep.
    """

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.advance(delay)
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Time control
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def provider_config() -> ProviderConfig:
    """Provider config matching the canonical c1/s1 test identity."""
    return ProviderConfig(token_url=TOKEN_URL, client_id="c1", client_secret="s1")


@pytest.fixture
def client_config(provider_config: ProviderConfig) -> ClientConfig:
    return ClientConfig(base_url=BASE_URL, provider=provider_config)
