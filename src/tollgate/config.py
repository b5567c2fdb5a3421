"""Configuration loading and credential source resolution.

Two entry points build a :class:`~tollgate.models.ClientConfig`:

* :func:`load_config_from_env` -- reads ``TOLLGATE_*`` environment
  variables. Only the token endpoint and client credentials are required;
  the base URL defaults to ``http://localhost:5000``.
* :func:`load_config_file` -- reads a JSON document shaped like
  :class:`~tollgate.models.ClientConfig`.

In both, ``client_id`` and ``client_secret`` may be given as credential
*sources* rather than literal values (see :func:`resolve_credential`), so a
config file can be committed without the secret it refers to.

Every failure -- a missing variable, a malformed number, invalid JSON or a
Pydantic validation error -- surfaces as
:class:`~tollgate.exceptions.ConfigError`.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, TypeVar, Union

from pydantic import ValidationError

from tollgate.exceptions import ConfigError
from tollgate.models import ClientConfig

ENV_PREFIX = "TOLLGATE_"
DEFAULT_BASE_URL = "http://localhost:5000"

_T = TypeVar("_T")


# --- Credential source resolution ---


def resolve_credential(source: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Resolve a credential from its source descriptor.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``VAR_NAME`` from the environment
        - ``"file:/path/to/file"`` -- reads file content, stripped of whitespace
        - anything else -- returned unchanged as the literal credential

    Args:
        source: The source descriptor string.
        environ: Environment mapping; defaults to :data:`os.environ`.

    Returns:
        The resolved credential string.

    Raises:
        ConfigError: If the source can't be resolved.
    """
    env = os.environ if environ is None else environ

    if source.startswith("env:"):
        var_name = source[4:]
        value = env.get(var_name)
        if value is None:
            raise ConfigError(
                f"Environment variable '{var_name}' is not set (source: {source})"
            )
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    return source


# --- Environment ---


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> ClientConfig:
    """Build a :class:`ClientConfig` from ``TOLLGATE_*`` variables.

    Required: ``TOLLGATE_TOKEN_URL``, ``TOLLGATE_CLIENT_ID``,
    ``TOLLGATE_CLIENT_SECRET``. Optional: ``TOLLGATE_BASE_URL``,
    ``TOLLGATE_API_PREFIX``, ``TOLLGATE_SCOPE``,
    ``TOLLGATE_MAX_CONCURRENCY``, ``TOLLGATE_CIRCUIT_THRESHOLD``,
    ``TOLLGATE_CIRCUIT_RESET_TIMEOUT``.

    Args:
        environ: Environment mapping; defaults to :data:`os.environ`.

    Raises:
        ConfigError: If a required variable is missing or a value is invalid.
    """
    env = os.environ if environ is None else environ

    def required(name: str) -> str:
        value = env.get(ENV_PREFIX + name, "").strip()
        if not value:
            raise ConfigError(f"Environment variable '{ENV_PREFIX}{name}' is required")
        return value

    def optional(name: str, convert: Callable[[str], _T]) -> Optional[_T]:
        raw = env.get(ENV_PREFIX + name, "").strip()
        if not raw:
            return None
        try:
            return convert(raw)
        except ValueError as exc:
            raise ConfigError(
                f"Invalid value for '{ENV_PREFIX}{name}': {raw!r}"
            ) from exc

    provider: dict[str, Any] = {
        "token_url": required("TOKEN_URL"),
        "client_id": resolve_credential(required("CLIENT_ID"), env),
        "client_secret": resolve_credential(required("CLIENT_SECRET"), env),
    }
    scope = optional("SCOPE", str)
    if scope is not None:
        provider["scope"] = scope

    data: dict[str, Any] = {
        "base_url": env.get(ENV_PREFIX + "BASE_URL", "").strip() or DEFAULT_BASE_URL,
        "provider": provider,
    }
    overrides = {
        "api_prefix": optional("API_PREFIX", str),
        "max_concurrency": optional("MAX_CONCURRENCY", int),
        "circuit_threshold": optional("CIRCUIT_THRESHOLD", int),
        "circuit_reset_timeout": optional("CIRCUIT_RESET_TIMEOUT", float),
    }
    data.update({key: value for key, value in overrides.items() if value is not None})

    return _validate(data, "environment")


# --- Files ---


def load_config_file(path: Union[str, Path], environ: Optional[Mapping[str, str]] = None) -> ClientConfig:
    """Load a :class:`ClientConfig` from a JSON file.

    Example file::

        {
          "base_url": "https://api.example.com",
          "api_prefix": "/api",
          "provider": {
            "token_url": "https://id.example.com/token",
            "client_id": "svc-reporting",
            "client_secret": "env:REPORTING_SECRET"
          }
        }

    Args:
        path: Path to the JSON document.
        environ: Environment used to resolve ``env:`` credential sources.

    Raises:
        ConfigError: If the file is missing, contains invalid JSON, names an
            unresolvable credential source, or fails validation.
    """
    path = Path(path).expanduser()
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise ConfigError(f"Invalid config at {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config at {path}: expected a JSON object")

    provider = data.get("provider")
    if isinstance(provider, dict):
        provider = dict(provider)
        for key in ("client_id", "client_secret"):
            if isinstance(provider.get(key), str):
                provider[key] = resolve_credential(provider[key], environ)
        data = {**data, "provider": provider}

    return _validate(data, str(path))


def _validate(data: dict[str, Any], origin: str) -> ClientConfig:
    try:
        return ClientConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration from {origin}: {exc}") from exc
