"""Pooled HTTP client for upstream providers."""
import logging
from typing import Dict, Optional

import httpx

from msgrelay.adapters.llm.base import ProviderRequest

logger = logging.getLogger(__name__)


class UpstreamHTTPClient:
    """HTTP client for upstream providers with connection pooling.

    Keeps one ``httpx.AsyncClient`` per TLS verification mode, since
    channels may opt out of certificate verification.
    """

    def __init__(
        self,
        timeout_s: float = 300.0,
        connect_timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            timeout_s: Read/write timeout in seconds
            connect_timeout_s: Connect timeout in seconds
            transport: Optional transport override (used by tests)
        """
        self.timeout_s = timeout_s
        self.connect_timeout_s = connect_timeout_s
        self._transport = transport
        self._clients: Dict[bool, httpx.AsyncClient] = {}

    def _get_client(self, verify: bool) -> httpx.AsyncClient:
        client = self._clients.get(verify)
        if client is None:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s, connect=self.connect_timeout_s),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
                verify=verify,
                transport=self._transport,
            )
            self._clients[verify] = client
            if not verify:
                logger.warning("Created upstream client with TLS verification disabled")
        return client

    async def send(self, provider_request: ProviderRequest, verify: bool = True) -> httpx.Response:
        """Send a provider request without buffering the response body.

        The caller owns the returned response and must close it.

        Raises:
            httpx.RequestError: On network failures
        """
        client = self._get_client(verify)
        request = client.build_request(
            provider_request.method,
            provider_request.url,
            headers=provider_request.headers,
            content=provider_request.body,
        )
        return await client.send(request, stream=True)

    async def close(self):
        """Close all pooled clients."""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
