"""Bearer token acquisition and lifecycle management."""

from tollgate.auth.token_provider import TokenProvider

__all__ = ["TokenProvider"]
