"""Health check and monitoring endpoints.

This module provides:
- GET /health - Health check with current channel summary
- GET /metrics - Prometheus metrics
"""
import logging
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from msgrelay import __version__
from msgrelay.app.dependencies import get_app_state

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str = __version__
    channel: Optional[str] = None
    service_type: Optional[str] = None
    keys: int = 0
    failed_keys: int = 0


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint for load balancers and monitoring."""
    state = get_app_state()
    channel = state.registry.current_channel() if state.registry else None
    if channel is None:
        return HealthResponse(status="degraded")

    failed = 0
    if state.health_tracker:
        failed_set = set(state.health_tracker.failed_keys())
        failed = sum(1 for key in channel.api_keys if key in failed_set)

    return HealthResponse(
        status="ok" if channel.api_keys and failed < len(channel.api_keys) else "degraded",
        channel=channel.name,
        service_type=channel.service_type,
        keys=len(channel.api_keys),
        failed_keys=failed,
    )


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
