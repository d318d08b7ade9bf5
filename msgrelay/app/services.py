"""Request orchestration for the msgrelay proxy.

ProxyEngine handles one authenticated request end to end:
- selects the channel and an API key
- builds the provider request through the channel's adapter
- performs the upstream call
- pipes the translated response (buffered or streamed) back to the caller
- records key failures, metrics and a structured log line
"""
import json
import logging
import time
from typing import AsyncIterator, Dict, Mapping, Optional

import httpx
from fastapi.responses import Response, StreamingResponse

from msgrelay.adapters.llm.base import ProviderRequest, UnifiedResponse
from msgrelay.adapters.llm.factory import get_adapter
from msgrelay.adapters.llm.streaming import error_event
from msgrelay.app.schemas import UnifiedRequest
from msgrelay.config.loader import ChannelRegistry
from msgrelay.config.schema import UpstreamChannel
from msgrelay.core.errors import (
    ProxyError,
    UpstreamHTTPError,
    UpstreamStatus,
    UpstreamStreamError,
    UpstreamTransportError,
)
from msgrelay.core.http_client import UpstreamHTTPClient
from msgrelay.core.key_health import KeyHealthTracker
from msgrelay.core.logging import structured_logger
from msgrelay.core.selector import UpstreamSelector
from msgrelay.metrics.prometheus import errors_total, request_latency_ms, requests_total

logger = logging.getLogger(__name__)

# Upstream statuses that indicate a problem with the key itself
KEY_FAILURE_STATUSES = frozenset({401, 402, 403, 408, 429})


def is_key_failure_status(status_code: int) -> bool:
    return status_code in KEY_FAILURE_STATUSES or status_code >= 500


def _upstream_error_message(status_code: int, body: bytes) -> str:
    """Human-readable message for a non-2xx upstream response."""
    detail = None
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            detail = error.get("message")
        elif isinstance(error, str):
            detail = error
        detail = detail or data.get("message")
    if detail:
        return f"Upstream returned HTTP {status_code}: {str(detail)[:500]}"
    return f"Upstream returned HTTP {status_code}"


class ProxyEngine:
    """Orchestrates one proxied request.

    Transport failures mark the key as failed but are not retried with
    another key in the same request; the next request benefits from the
    updated key health instead.
    """

    def __init__(
        self,
        selector: UpstreamSelector,
        health_tracker: KeyHealthTracker,
        registry: ChannelRegistry,
        http_client: UpstreamHTTPClient,
    ):
        self.selector = selector
        self.health_tracker = health_tracker
        self.registry = registry
        self.http_client = http_client

    async def handle(
        self,
        request: UnifiedRequest,
        inbound_headers: Mapping[str, str],
        request_id: str,
    ) -> Response:
        """Proxy ``request`` and return the caller-facing response.

        Raises:
            ProxyError: For any failure before the response has started
        """
        start_time = time.time()
        channel: Optional[UpstreamChannel] = None
        api_key: Optional[str] = None

        try:
            channel = self.selector.select_channel()
            adapter = get_adapter(channel.service_type)
            api_key = self.selector.select_key(channel)

            provider_request = await adapter.build_upstream_request(request, channel, api_key, inbound_headers)
            response = await self._send(provider_request, channel, api_key)
            if response.status_code >= 400:
                await self._raise_for_status(response, channel, api_key)

            unified = await adapter.translate_upstream_response(response, request)
        except ProxyError as e:
            self._log_and_metric(
                request_id=request_id,
                channel=channel,
                request=request,
                start_time=start_time,
                outcome="error",
                error=e,
                api_key=api_key,
            )
            raise

        if unified.is_stream:
            headers = self._stream_headers(unified, request_id)
            return StreamingResponse(
                self._guard_stream(unified, request, channel, api_key, request_id, start_time),
                status_code=unified.status_code,
                headers=headers,
                media_type="text/event-stream",
            )

        self._log_and_metric(
            request_id=request_id,
            channel=channel,
            request=request,
            start_time=start_time,
            outcome="success",
            api_key=api_key,
            upstream_status=unified.status_code,
        )
        headers = dict(unified.headers)
        headers["x-request-id"] = request_id
        return Response(content=unified.body, status_code=unified.status_code, headers=headers)

    async def _send(
        self,
        provider_request: ProviderRequest,
        channel: UpstreamChannel,
        api_key: str,
    ) -> httpx.Response:
        try:
            return await self.http_client.send(provider_request, verify=not channel.insecure_skip_verify)
        except httpx.RequestError as e:
            logger.warning(f"Transport error reaching channel {channel.name!r}: {type(e).__name__}: {e}")
            self._mark_key_failed(channel, api_key)
            raise UpstreamTransportError("Failed to reach the upstream provider") from e

    async def _raise_for_status(self, response: httpx.Response, channel: UpstreamChannel, api_key: str):
        try:
            body = await response.aread()
        finally:
            await response.aclose()

        status_code = response.status_code
        logger.warning(
            f"Upstream {channel.name!r} returned HTTP {status_code}: "
            f"{body[:500].decode('utf-8', errors='replace')}"
        )
        if is_key_failure_status(status_code):
            self._mark_key_failed(channel, api_key)
        raise UpstreamHTTPError(_upstream_error_message(status_code, body), status_code=status_code)

    def _mark_key_failed(self, channel: UpstreamChannel, api_key: str):
        self.health_tracker.mark_failed(api_key)
        self.registry.report_key_failure(channel, api_key)

    def _stream_headers(self, unified: UnifiedResponse, request_id: str) -> Dict[str, str]:
        headers = {
            name.lower(): value for name, value in unified.headers.items()
            if name.lower() != "content-type"
        }
        headers.update({
            "x-request-id": request_id,
            "cache-control": "no-cache",
            "connection": "keep-alive",
        })
        return headers

    async def _guard_stream(
        self,
        unified: UnifiedResponse,
        request: UnifiedRequest,
        channel: UpstreamChannel,
        api_key: str,
        request_id: str,
        start_time: float,
    ) -> AsyncIterator[bytes]:
        """Forward a translated stream, turning failures into an error event.

        If the caller disconnects, the upstream response is closed as soon
        as this generator is closed.
        """
        stream = unified.stream
        error: Optional[ProxyError] = None
        completed = False

        try:
            async for chunk in stream:
                yield chunk
            completed = True
        except UpstreamStreamError as e:
            error = e
            logger.warning(f"Aborting stream {request_id}: {e.message}")
            yield error_event(e.error_type, e.code.value, e.message).encode("utf-8")
        except httpx.HTTPError as e:
            error = UpstreamTransportError("Upstream connection failed mid-stream")
            logger.warning(f"Transport error mid-stream {request_id}: {type(e).__name__}: {e}")
            self._mark_key_failed(channel, api_key)
            yield error_event(error.error_type, error.code.value, error.message).encode("utf-8")
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

            if error is not None:
                outcome = "error"
            elif completed:
                outcome = "success"
            else:
                outcome = "cancelled"
                logger.info(f"Caller disconnected from stream {request_id}")
            self._log_and_metric(
                request_id=request_id,
                channel=channel,
                request=request,
                start_time=start_time,
                outcome=outcome,
                error=error,
                api_key=api_key,
                upstream_status=unified.status_code,
            )

    def _log_and_metric(
        self,
        request_id: str,
        channel: Optional[UpstreamChannel],
        request: UnifiedRequest,
        start_time: float,
        outcome: str,
        error: Optional[ProxyError] = None,
        api_key: Optional[str] = None,
        upstream_status: Optional[int] = None,
    ):
        """Helper to update metrics and log a proxied request."""
        latency_ms = int((time.time() - start_time) * 1000)
        channel_label = (channel.name or "unnamed") if channel else "none"
        service_type = channel.service_type if channel else None
        stream_str = "true" if request.stream else "false"

        requests_total.labels(
            channel=channel_label,
            service_type=service_type or "none",
            stream=stream_str,
            outcome=outcome,
        ).inc()
        request_latency_ms.labels(
            channel=channel_label,
            service_type=service_type or "none",
            stream=stream_str,
        ).observe(latency_ms)

        error_code = None
        if error is not None:
            error_code = error.code.value
            if isinstance(error, UpstreamHTTPError):
                upstream_status = error.upstream_status
                status_label = UpstreamStatus.normalize(upstream_status)
            elif isinstance(error, UpstreamTransportError):
                status_label = UpstreamStatus.NETWORK_ERROR.value
            else:
                status_label = UpstreamStatus.UNKNOWN.value
            errors_total.labels(
                channel=channel_label,
                error_code=error_code,
                upstream_status=status_label,
            ).inc()

        structured_logger.log_request(
            request_id=request_id,
            channel=channel.name if channel else None,
            service_type=service_type,
            stream=request.stream,
            model=request.model,
            outcome="error" if error is not None else outcome,
            error_code=error_code,
            upstream_status=upstream_status,
            latency_ms=latency_ms,
            api_key=api_key,
            level="ERROR" if error is not None else "INFO",
        )
