"""msgrelay Core - key health and error primitives."""

from msgrelay.core.errors import (
    AuthenticationError,
    ErrorCode,
    InvalidRequestError,
    NoChannelConfigured,
    NoKeyAvailable,
    ProxyError,
    UnsupportedServiceType,
    UpstreamHTTPError,
    UpstreamStreamError,
    UpstreamTransportError,
)
from msgrelay.core.key_health import KeyHealthTracker

__all__ = [
    "AuthenticationError",
    "ErrorCode",
    "InvalidRequestError",
    "KeyHealthTracker",
    "NoChannelConfigured",
    "NoKeyAvailable",
    "ProxyError",
    "UnsupportedServiceType",
    "UpstreamHTTPError",
    "UpstreamStreamError",
    "UpstreamTransportError",
]
