"""Error codes, status normalization and proxy exceptions for msgrelay."""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Normalized error codes for msgrelay.

    All error codes must be one of these values.
    Used in responses, logs, and metrics.
    """
    # Client errors (4xx)
    UNAUTHORIZED = "UNAUTHORIZED"
    BAD_REQUEST = "BAD_REQUEST"
    UNSUPPORTED_SERVICE_TYPE = "UNSUPPORTED_SERVICE_TYPE"

    # Selection errors
    NO_CHANNEL_CONFIGURED = "NO_CHANNEL_CONFIGURED"
    NO_KEY_AVAILABLE = "NO_KEY_AVAILABLE"

    # Upstream errors (from provider APIs)
    NETWORK_ERROR = "NETWORK_ERROR"  # Network/timeout
    UPSTREAM_ERROR = "UPSTREAM_ERROR"  # Non-2xx from provider
    UPSTREAM_STREAM_ERROR = "UPSTREAM_STREAM_ERROR"  # Error object inside SSE

    # Internal errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class UpstreamStatus(str, Enum):
    """Normalized upstream status codes for metrics.

    Upstream status codes are normalized to reduce Prometheus cardinality.
    Actual status codes are preserved in logs.
    """
    OK = "200"

    BAD_REQUEST = "400"
    UNAUTHORIZED = "401"
    PAYMENT_REQUIRED = "402"
    FORBIDDEN = "403"
    NOT_FOUND = "404"
    TOO_MANY_REQUESTS = "429"
    CLIENT_ERROR_OTHER = "4xx"

    INTERNAL_SERVER_ERROR = "500"
    BAD_GATEWAY = "502"
    SERVICE_UNAVAILABLE = "503"
    GATEWAY_TIMEOUT = "504"
    SERVER_ERROR_OTHER = "5xx"

    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"

    @classmethod
    def normalize(cls, status_code: Optional[int]) -> str:
        """Normalize HTTP status code to enum value.

        Args:
            status_code: HTTP status code or None

        Returns:
            Normalized status string for metrics
        """
        if status_code is None:
            return cls.UNKNOWN.value

        for member in cls:
            if member.value == str(status_code):
                return member.value
        if 200 <= status_code < 300:
            return cls.OK.value
        elif 400 <= status_code < 500:
            return cls.CLIENT_ERROR_OTHER.value
        elif 500 <= status_code < 600:
            return cls.SERVER_ERROR_OTHER.value
        return cls.UNKNOWN.value


class ProxyError(Exception):
    """Base class for errors surfaced to the caller as structured JSON."""

    status_code: int = 500
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    error_type: str = "api_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Render the caller-facing error body."""
        return {
            "type": "error",
            "error": {
                "type": self.error_type,
                "code": self.code.value,
                "message": self.message,
            },
        }


class AuthenticationError(ProxyError):
    status_code = 401
    code = ErrorCode.UNAUTHORIZED
    error_type = "authentication_error"


class InvalidRequestError(ProxyError):
    status_code = 400
    code = ErrorCode.BAD_REQUEST
    error_type = "invalid_request_error"


class NoChannelConfigured(ProxyError):
    status_code = 500
    code = ErrorCode.NO_CHANNEL_CONFIGURED


class NoKeyAvailable(ProxyError):
    status_code = 500
    code = ErrorCode.NO_KEY_AVAILABLE


class UnsupportedServiceType(ProxyError):
    status_code = 400
    code = ErrorCode.UNSUPPORTED_SERVICE_TYPE
    error_type = "invalid_request_error"


class UpstreamTransportError(ProxyError):
    """Network failure reaching the provider."""

    status_code = 502
    code = ErrorCode.NETWORK_ERROR


class UpstreamHTTPError(ProxyError):
    """Provider answered with a non-2xx status."""

    code = ErrorCode.UPSTREAM_ERROR

    def __init__(self, message: str, status_code: int):
        super().__init__(message, status_code=status_code)
        self.upstream_status = status_code
        if status_code == 401:
            self.error_type = "authentication_error"
        elif status_code == 429:
            self.error_type = "rate_limit_error"
        elif status_code >= 500:
            self.error_type = "api_error"
        else:
            self.error_type = "invalid_request_error"


class UpstreamStreamError(ProxyError):
    """Provider embedded an error object inside an event stream."""

    status_code = 502
    code = ErrorCode.UPSTREAM_STREAM_ERROR
    error_type = "stream_error"

    def __init__(self, message: str, payload: Optional[Any] = None):
        super().__init__(message)
        self.payload = payload
