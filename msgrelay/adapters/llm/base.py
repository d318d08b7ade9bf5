"""Base provider adapter interface and shared helpers."""
import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Mapping, Optional
from urllib.parse import urlsplit

import httpx

from msgrelay.app.schemas import UnifiedRequest
from msgrelay.config.schema import UpstreamChannel
from msgrelay.core.errors import UpstreamHTTPError

# Trailing path segment such as /v1, /v2 or /v1beta
_VERSION_SUFFIX = re.compile(r"/v\d+[a-z0-9]*$", re.IGNORECASE)

# Headers that never travel from the caller to the provider
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
    "accept-encoding",
})

# Inbound proxy credentials and forwarding metadata
PROXY_HEADERS = frozenset({
    "x-api-key",
    "authorization",
    "x-proxy-key",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-goog-api-key",
})

# Response framing headers that no longer apply once httpx has decoded the body
RESPONSE_FRAMING_HEADERS = frozenset({
    "content-encoding",
    "transfer-encoding",
    "content-length",
    "connection",
})


@dataclass
class ProviderRequest:
    """Outbound HTTP request for a provider."""

    method: str
    url: str
    headers: Dict[str, str]
    body: bytes
    model: str = ""
    stream: bool = False


@dataclass
class UnifiedResponse:
    """Response in the caller's format.

    Exactly one of ``body`` and ``stream`` is set. ``stream`` yields encoded
    SSE frames and closes the upstream response when it finishes or is
    closed early.
    """

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None

    @property
    def is_stream(self) -> bool:
        return self.stream is not None


class ProviderAdapter(ABC):
    """Base class for provider adapters.

    One subclass per upstream wire format. Both operations are coroutines
    because they perform network I/O on the provider response.
    """

    service_type: str = ""

    @abstractmethod
    async def build_upstream_request(
        self,
        request: UnifiedRequest,
        channel: UpstreamChannel,
        api_key: str,
        inbound_headers: Optional[Mapping[str, str]] = None,
    ) -> ProviderRequest:
        """Build the provider-native HTTP request."""
        pass

    @abstractmethod
    async def translate_upstream_response(
        self,
        response: httpx.Response,
        request: UnifiedRequest,
    ) -> UnifiedResponse:
        """Translate a successful provider response to the unified format.

        ``response`` must have been sent with ``stream=True``; the adapter
        owns it from here and is responsible for closing it.
        """
        pass


def redirect_model(model: str, model_mapping: Optional[Mapping[str, str]]) -> str:
    """Resolve the upstream model name for ``model``.

    An exact key match wins. Otherwise the first mapping entry where either
    name contains the other is used. Unmapped models pass through unchanged.
    """
    if not model_mapping:
        return model
    if model in model_mapping:
        return model_mapping[model]
    for source, target in model_mapping.items():
        if source in model or model in source:
            return target
    return model


def build_url(base_url: str, endpoint: str, default_version: str = "v1") -> str:
    """Join a channel base URL with a provider endpoint.

    A base URL ending in ``#`` is used verbatim. Otherwise ``default_version``
    is inserted unless the URL already ends in a version segment.
    """
    base = base_url.strip()
    skip_version = base.endswith("#")
    if skip_version:
        base = base[:-1]
    base = base.rstrip("/")
    endpoint = endpoint.lstrip("/")

    if skip_version or _VERSION_SUFFIX.search(urlsplit(base).path):
        return f"{base}/{endpoint}"
    return f"{base}/{default_version}/{endpoint}"


def host_of(url: str) -> str:
    """Host header value for ``url``."""
    return urlsplit(url).netloc


def forwardable_headers(inbound_headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Copy inbound headers minus hop-by-hop headers and proxy credentials."""
    headers: Dict[str, str] = {}
    if not inbound_headers:
        return headers
    for name, value in inbound_headers.items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS or lowered in PROXY_HEADERS:
            continue
        headers[lowered] = value
    return headers


def response_headers(response: httpx.Response) -> Dict[str, str]:
    """Upstream response headers without encoding/framing headers."""
    return {
        name.lower(): value
        for name, value in response.headers.items()
        if name.lower() not in RESPONSE_FRAMING_HEADERS
    }


def is_event_stream(response: httpx.Response) -> bool:
    return "text/event-stream" in response.headers.get("content-type", "").lower()


def generate_message_id() -> str:
    return f"msg_{time.time_ns()}"


async def read_json(response: httpx.Response) -> Any:
    """Read and decode a buffered provider response, closing it.

    Raises:
        UpstreamHTTPError: If the provider returned a body that is not JSON
    """
    try:
        body = await response.aread()
    finally:
        await response.aclose()
    try:
        return json.loads(body)
    except ValueError as e:
        raise UpstreamHTTPError(f"Upstream returned invalid JSON: {e}", status_code=502) from e
