"""Canonical Pydantic models shared across all tollgate modules.

The models fall into two groups:

**Configuration models** -- immutable inputs supplied by the caller (or
loaded by :mod:`tollgate.config`):
    :class:`ProviderConfig` and :class:`ClientConfig`.

**State value objects** -- snapshots owned by a single component and
replaced, never mutated, when that component's state changes:
    :class:`TokenState`, :class:`TokenInfo`, :class:`CircuitState`, and
    :class:`CircuitSnapshot`.

All models use Pydantic v2. State objects are frozen so that a reader
holding a reference never observes a half-applied update.
"""

from __future__ import annotations

import enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# --- Configuration ---


class ProviderConfig(BaseModel):
    """OAuth2 client-credentials settings for a :class:`~tollgate.auth.TokenProvider`.

    Immutable for the lifetime of the provider that receives it.

    Example::

        ProviderConfig(
            token_url="https://id.example.com/realms/acme/protocol/openid-connect/token",
            client_id="svc-reporting",
            client_secret="s3cr3t",
        )
    """

    model_config = ConfigDict(frozen=True)

    token_url: str = Field(description="Token endpoint URL")
    client_id: str
    client_secret: str = Field(repr=False)
    scope: Optional[str] = Field(
        default=None, description="Space-separated scopes sent with token requests"
    )
    default_expires_in: Optional[float] = Field(
        default=300.0,
        description="Lifetime assumed when the issuer omits expires_in; None means unknown expiry",
    )
    refresh_buffer: float = Field(
        default=300.0, description="Renew this many seconds before expiry"
    )
    token_timeout: float = Field(default=10.0, description="Token request timeout in seconds")
    max_retries: int = Field(default=3, ge=0, description="Retries for retryable token failures")
    retry_base_delay: float = Field(default=1.0, ge=0)

    @field_validator("token_url", "client_id", "client_secret")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value


class ClientConfig(BaseModel):
    """Everything an :class:`~tollgate.client.ApiClient` needs to talk to one API.

    See Also:
        :func:`~tollgate.config.load_config_from_env` and
        :func:`~tollgate.config.load_config_file`.
    """

    model_config = ConfigDict(frozen=True)

    base_url: str = Field(description="Resource API base URL")
    api_prefix: Optional[str] = Field(
        default=None, description="Path prefix appended once to base_url, e.g. '/api'"
    )
    provider: ProviderConfig
    max_concurrency: int = Field(default=10, ge=1)
    gate_max_wait: Optional[float] = Field(
        default=None, description="Seconds a caller may wait for a slot; None waits forever"
    )
    circuit_threshold: int = Field(default=5, ge=1)
    circuit_reset_timeout: float = Field(default=60.0, ge=0)
    request_timeout: float = Field(default=30.0, description="Per-attempt API timeout in seconds")
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_non_idempotent: bool = Field(
        default=True, description="Retry POST on transient failures like any other verb"
    )

    @field_validator("base_url")
    @classmethod
    def _base_url_present(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


# --- Token state ---


class TokenState(BaseModel):
    """A bearer credential as issued by the token endpoint.

    ``expires_at`` is a monotonic-clock timestamp computed at issuance from
    the issuer's ``expires_in``. ``None`` means the expiry is unknown: the
    token is never renewed proactively and is only replaced after the
    resource API rejects it.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[float] = None

    def needs_renewal(self, now: float, buffer: float) -> bool:
        """Whether the token is inside the renewal buffer (or expired)."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at - buffer

    def is_expired(self, now: float) -> bool:
        """Whether the token's lifetime has fully elapsed."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class TokenInfo(BaseModel):
    """Debug view of the provider's current token, without the secret itself."""

    expires_at: Optional[float] = None
    is_expiring_soon: bool = False
    has_refresh_token: bool = False


# --- Circuit state ---


class CircuitState(str, enum.Enum):
    """The three states of a :class:`~tollgate.resilience.CircuitBreaker`."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitSnapshot(BaseModel):
    """Read-only copy of a breaker's state at one instant."""

    model_config = ConfigDict(frozen=True)

    state: CircuitState
    failure_count: int
    last_failure_at: Optional[float] = None
    threshold: int
    reset_timeout: float
