"""Structured logging for msgrelay."""
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional


def mask_api_key(api_key: Optional[str]) -> str:
    """Mask an API key for logs and status output.

    Short keys are fully hidden; longer keys keep a recognizable prefix
    and suffix.
    """
    if not api_key:
        return ""
    length = len(api_key)
    if length <= 5:
        return "***"
    if length <= 10:
        return f"{api_key[:3]}***{api_key[-2:]}"
    return f"{api_key[:8]}***{api_key[-5:]}"


class StructuredLogger:
    """Structured JSON logger for proxied requests."""

    def __init__(self, name: str = "msgrelay"):
        self.logger = logging.getLogger(name)

    def log_request(
        self,
        request_id: str,
        channel: Optional[str],
        service_type: Optional[str],
        stream: bool,
        model: Optional[str] = None,
        outcome: str = "success",  # "success" or "error"
        error_code: Optional[str] = None,
        upstream_status: Optional[int] = None,
        latency_ms: int = 0,
        api_key: Optional[str] = None,
        level: str = "INFO",
    ):
        """Log a request summary as structured JSON.

        Args:
            request_id: Unique request identifier
            channel: Upstream channel name
            service_type: Channel service type
            stream: Whether the caller asked for a streaming response
            model: Model name after redirection
            outcome: "success" or "error"
            error_code: Error code if outcome is "error"
            upstream_status: Upstream HTTP status code
            latency_ms: Request latency in milliseconds
            api_key: Upstream key used (logged masked)
            level: Log level (INFO, WARNING, ERROR)
        """
        log_entry: Dict[str, Any] = {
            "ts": datetime.utcnow().isoformat() + "Z",
            "level": level,
            "request_id": request_id,
            "channel": channel,
            "service_type": service_type,
            "stream": stream,
            "outcome": outcome,
            "latency_ms": latency_ms,
        }

        if model:
            log_entry["model"] = model
        if api_key:
            log_entry["api_key"] = mask_api_key(api_key)

        # Add error fields if applicable
        if outcome == "error":
            if error_code:
                log_entry["error_code"] = error_code
            if upstream_status:
                log_entry["upstream_status"] = upstream_status

        # Log as JSON line
        log_message = json.dumps(log_entry, ensure_ascii=False)

        if level == "ERROR":
            self.logger.error(log_message)
        elif level == "WARNING":
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)


# Global structured logger instance
structured_logger = StructuredLogger()
