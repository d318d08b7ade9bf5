"""Native Messages adapter (format-preserving passthrough)."""
import json
import logging
from typing import Mapping, Optional

import httpx

from msgrelay.adapters.llm.base import (
    ProviderAdapter,
    ProviderRequest,
    UnifiedResponse,
    build_url,
    forwardable_headers,
    host_of,
    is_event_stream,
    redirect_model,
    response_headers,
)
from msgrelay.app.schemas import UnifiedRequest
from msgrelay.config.schema import ServiceType, UpstreamChannel

logger = logging.getLogger(__name__)

# Keys with this prefix authenticate through the dedicated key header
NATIVE_KEY_PREFIX = "sk-ant-"
CLIENT_USER_AGENT = "claude-cli/1.0.58 (external, cli)"


class NativeAdapter(ProviderAdapter):
    """Forward requests to an upstream that already speaks the Messages format.

    Only headers are rewritten. The body is re-serialized only when the
    channel maps model names.
    """

    service_type = ServiceType.NATIVE.value
    endpoint = "messages"

    def prepare_headers(
        self,
        inbound_headers: Optional[Mapping[str, str]],
        url: str,
        api_key: str,
    ) -> dict:
        headers = forwardable_headers(inbound_headers)
        headers["host"] = host_of(url)
        headers["content-type"] = "application/json"

        if api_key.startswith(NATIVE_KEY_PREFIX):
            headers["x-api-key"] = api_key
        else:
            headers["authorization"] = f"Bearer {api_key}"

        user_agent = headers.get("user-agent", "")
        if not user_agent.lower().startswith("claude-cli"):
            headers["user-agent"] = CLIENT_USER_AGENT
        return headers

    async def build_upstream_request(
        self,
        request: UnifiedRequest,
        channel: UpstreamChannel,
        api_key: str,
        inbound_headers: Optional[Mapping[str, str]] = None,
    ) -> ProviderRequest:
        url = build_url(channel.base_url, self.endpoint)
        body = request.raw_body
        model = request.model

        if channel.model_mapping:
            model = redirect_model(request.model, channel.model_mapping)
            payload = json.loads(body)
            payload["model"] = model
            body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
            if model != request.model:
                logger.debug(f"Redirected model {request.model!r} -> {model!r} for channel {channel.name!r}")

        return ProviderRequest(
            method="POST",
            url=url,
            headers=self.prepare_headers(inbound_headers, url, api_key),
            body=body,
            model=model,
            stream=request.stream,
        )

    async def translate_upstream_response(
        self,
        response: httpx.Response,
        request: UnifiedRequest,
    ) -> UnifiedResponse:
        headers = response_headers(response)

        if is_event_stream(response):
            return UnifiedResponse(
                status_code=response.status_code,
                headers=headers,
                stream=self._passthrough(response),
            )

        try:
            body = await response.aread()
        finally:
            await response.aclose()
        return UnifiedResponse(status_code=response.status_code, headers=headers, body=body)

    async def _passthrough(self, response: httpx.Response):
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        finally:
            await response.aclose()
