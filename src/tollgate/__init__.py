"""tollgate -- resilient, authenticated access to a remote JSON API.

The package bundles everything a service needs to call a protected HTTP API
from an asyncio application: an OAuth2 client-credentials token provider
with proactive refresh, a FIFO concurrency gate, a circuit breaker, a retry
policy for transient failures, and a facade that composes them.

Typical usage::

    from tollgate import ApiClient, ObservabilityProvider

    observer = ObservabilityProvider()
    async with ApiClient.from_env(observer=observer) as client:
        widget = await client.get("/widgets/42")

Modules:
    auth: OAuth2 token acquisition, refresh and single-flight renewal.
    resilience: Concurrency gate, circuit breaker and retry policy.
    client: The :class:`ApiClient` facade.
    observability: Observer interface, in-memory buffers, Prometheus export.
    config: Environment and JSON-file configuration loaders.
    models: Pydantic configuration models and state value objects.
    exceptions: Typed error hierarchy.
    output: stderr diagnostics with Rich support.
"""

from tollgate.auth import TokenProvider
from tollgate.client import ApiClient
from tollgate.exceptions import (
    AuthError,
    CircuitOpenError,
    ConfigError,
    GateTimeoutError,
    HttpError,
    NetworkError,
    RequestError,
    TollgateError,
)
from tollgate.models import ClientConfig, ProviderConfig
from tollgate.observability import NullObserver, ObservabilityProvider, Observer
from tollgate.resilience import CircuitBreaker, ConcurrencyGate, RetryPolicy

__version__ = "0.1.0"

__all__ = [
    "ApiClient",
    "AuthError",
    "CircuitBreaker",
    "CircuitOpenError",
    "ClientConfig",
    "ConcurrencyGate",
    "ConfigError",
    "GateTimeoutError",
    "HttpError",
    "NetworkError",
    "NullObserver",
    "ObservabilityProvider",
    "Observer",
    "ProviderConfig",
    "RequestError",
    "RetryPolicy",
    "TokenProvider",
    "TollgateError",
]
