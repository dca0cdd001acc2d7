"""
Shared async HTTP client plumbing for backend services.
"""

from typing import Optional

import httpx

from healtrack.config import Settings, get_settings
from healtrack.models.auth import AuthContext


class BaseApiClient:
    """
    Async client for the clinic backend.

    Implements connection pooling for efficient concurrent requests. The
    caller's AuthContext is injected at construction and sent on every
    request.
    """

    def __init__(
        self,
        auth: AuthContext,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.auth = auth
        self.settings = settings or get_settings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.settings.api_base_url,
                headers=self.auth.headers,
                timeout=httpx.Timeout(self.settings.api_timeout),
                limits=httpx.Limits(
                    max_connections=self.settings.connection_pool_size,
                    max_keepalive_connections=self.settings.connection_pool_size // 2,
                ),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
