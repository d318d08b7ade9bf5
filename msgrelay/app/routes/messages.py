"""Unified Messages endpoint.

This module provides:
- POST /v1/messages - Messages-format proxy to the configured upstream channel
"""
import logging
import uuid

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from msgrelay.app.dependencies import get_engine, verify_access_key
from msgrelay.app.schemas import UnifiedRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Messages"])


@router.post("/v1/messages", dependencies=[Depends(verify_access_key)])
async def create_message(request: Request) -> Response:
    """Proxy a Messages request to the current upstream channel.

    The body is validated as a unified request, routed to the channel's
    provider adapter, and the answer is returned in the same format,
    streamed as server-sent events when ``stream`` is true.
    """
    request_id = request.headers.get("X-Request-ID") or f"req_{uuid.uuid4().hex[:16]}"
    raw_body = await request.body()
    unified = UnifiedRequest.parse_body(raw_body)

    logger.debug(f"Request {request_id}: model={unified.model} stream={unified.stream}")
    engine = get_engine()
    return await engine.handle(unified, request.headers, request_id)
