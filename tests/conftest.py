"""Pytest configuration and fixtures."""
import json
from typing import Callable, List, Optional

import httpx
import pytest

from msgrelay.app.dependencies import AppState, app_state, init_app_state
from msgrelay.config.loader import ChannelRegistry
from msgrelay.config.schema import LoadBalanceStrategy, ProxyConfig, UpstreamChannel
from msgrelay.core.key_health import KeyHealthTracker

ACCESS_KEY = "test-proxy-secret"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_channel(
    service_type: str = "chat-completions-current",
    api_keys: Optional[List[str]] = None,
    base_url: str = "https://upstream.example.com",
    model_mapping: Optional[dict] = None,
    name: str = "test-channel",
) -> UpstreamChannel:
    return UpstreamChannel(
        name=name,
        service_type=service_type,
        base_url=base_url,
        api_keys=["key-a", "key-b", "key-c"] if api_keys is None else api_keys,
        model_mapping=model_mapping or {},
    )


def make_registry(
    *channels: UpstreamChannel,
    load_balance: LoadBalanceStrategy = LoadBalanceStrategy.ROUND_ROBIN,
) -> ChannelRegistry:
    return ChannelRegistry(ProxyConfig(upstream=list(channels), load_balance=load_balance))


def sse_body(*payloads) -> bytes:
    """Build an upstream event-stream body from JSON payloads or raw strings."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return KeyHealthTracker(clock=clock)


@pytest.fixture
def wire_app() -> Callable[..., AppState]:
    """Wire the global app state to a mocked upstream.

    Returns a factory taking the channel and an httpx.MockTransport handler.
    """
    def _wire(
        channel: Optional[UpstreamChannel],
        handler: Callable[[httpx.Request], httpx.Response],
        access_key: Optional[str] = ACCESS_KEY,
    ) -> AppState:
        registry = make_registry(channel) if channel is not None else make_registry()
        return init_app_state(
            app_state,
            registry=registry,
            access_key=access_key,
            transport=httpx.MockTransport(handler),
        )

    yield _wire

    app_state.registry = None
    app_state.health_tracker = None
    app_state.selector = None
    app_state.http_client = None
    app_state.engine = None
    app_state.access_key = None
