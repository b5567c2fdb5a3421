"""HTTP client facade for the resource API."""

from tollgate.client.api_client import ApiClient

__all__ = ["ApiClient"]
