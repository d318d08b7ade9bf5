"""Shared dependencies and utilities for the msgrelay FastAPI application.

This module contains:
- Global state management (registry, key health, selector, engine)
- Shared-secret authentication
- Component initialization and startup validation
"""
import hmac
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx
from fastapi import Request

from msgrelay.adapters.llm.factory import ADAPTERS
from msgrelay.app.services import ProxyEngine
from msgrelay.config.loader import ChannelRegistry
from msgrelay.core.errors import AuthenticationError, ProxyError
from msgrelay.core.http_client import UpstreamHTTPClient
from msgrelay.core.key_health import KeyHealthTracker, SWEEP_INTERVAL_SECONDS
from msgrelay.core.selector import UpstreamSelector

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """Application state container for all shared components.

    Built once at startup and handed to every request through
    ``get_app_state()``.
    """
    registry: Optional[ChannelRegistry] = None
    health_tracker: Optional[KeyHealthTracker] = None
    selector: Optional[UpstreamSelector] = None
    http_client: Optional[UpstreamHTTPClient] = None
    engine: Optional[ProxyEngine] = None
    access_key: Optional[str] = None


# Global application state instance
app_state = AppState()


def get_app_state() -> AppState:
    """Get the global application state.

    Returns:
        AppState: The global application state instance.
    """
    return app_state


def init_app_state(
    state: AppState,
    registry: ChannelRegistry,
    access_key: Optional[str],
    timeout_s: float = 300.0,
    connect_timeout_s: float = 10.0,
    sweep_interval_s: float = SWEEP_INTERVAL_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    health_tracker: Optional[KeyHealthTracker] = None,
) -> AppState:
    """Wire the proxy components into ``state``.

    Args:
        state: State container to populate
        registry: Channel configuration holder
        access_key: Shared secret callers must present
        timeout_s: Upstream read timeout in seconds
        connect_timeout_s: Upstream connect timeout in seconds
        sweep_interval_s: Key health sweep interval in seconds
        transport: Optional httpx transport override (used by tests)
        health_tracker: Optional pre-built tracker (used by tests)

    Returns:
        The populated state
    """
    state.registry = registry
    state.access_key = access_key
    state.health_tracker = health_tracker or KeyHealthTracker(sweep_interval_seconds=sweep_interval_s)
    state.selector = UpstreamSelector(registry, state.health_tracker)
    state.http_client = UpstreamHTTPClient(
        timeout_s=timeout_s,
        connect_timeout_s=connect_timeout_s,
        transport=transport,
    )
    state.engine = ProxyEngine(
        selector=state.selector,
        health_tracker=state.health_tracker,
        registry=registry,
        http_client=state.http_client,
    )
    return state


def validate_startup_config(state: AppState) -> List[str]:
    """Check the loaded configuration and collect warnings.

    Problems here are reported per request as structured errors, so they
    are logged rather than fatal at startup.

    Returns:
        List of warning messages
    """
    warnings: List[str] = []

    if not state.access_key:
        warnings.append("PROXY_ACCESS_KEY is not set, every request will be rejected")

    config = state.registry.snapshot() if state.registry else None
    if config is None or not config.upstream:
        warnings.append("No upstream channels configured")
    else:
        for channel in config.upstream:
            if channel.service_type not in ADAPTERS:
                warnings.append(f"Channel {channel.name!r} has unsupported service type {channel.service_type!r}")
            if not channel.api_keys:
                warnings.append(f"Channel {channel.name!r} has no API keys")
        if config.current_upstream >= len(config.upstream):
            warnings.append(
                f"currentUpstream={config.current_upstream} is out of range "
                f"({len(config.upstream)} channel(s) configured)"
            )

    for warning in warnings:
        logger.warning(f"Config warning: {warning}")
    return warnings


def extract_access_key(request: Request) -> Optional[str]:
    """Read the shared secret from ``x-api-key`` or ``Authorization: Bearer``."""
    api_key = request.headers.get("x-api-key")
    if api_key:
        return api_key.strip()

    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


def verify_access_key(request: Request) -> None:
    """Verify the caller's shared secret.

    Raises:
        AuthenticationError: If the secret is missing, wrong, or not configured
    """
    state = get_app_state()
    provided = extract_access_key(request)

    if not provided:
        raise AuthenticationError("Missing API key: send x-api-key or Authorization: Bearer")
    if not state.access_key:
        raise AuthenticationError("Proxy access key is not configured")
    if not hmac.compare_digest(provided.encode("utf-8"), state.access_key.encode("utf-8")):
        raise AuthenticationError("Invalid API key")


def get_engine() -> ProxyEngine:
    """Get the proxy engine, failing if startup did not complete."""
    engine = get_app_state().engine
    if engine is None:
        raise ProxyError("Proxy engine is not initialized")
    return engine
