"""
Error types for the market feed.

Transient failures (NetworkError, RateLimitError) are retried inside the
HTTP and feed clients and only escape once retries are exhausted.
ValidationError marks a malformed payload that is dropped. GapDetected is an
internal signal that triggers an order book resync. FatalInitError is the
only error meant to reach the operator.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class MarketFeedError(Exception):
    """Base error carrying a machine-readable code and context"""

    code = "MARKET_FEED_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp,
        }


class ConfigError(MarketFeedError):
    code = "CONFIG_ERROR"


class NetworkError(MarketFeedError):
    """Timeout, reset or refused connection"""

    code = "NETWORK_ERROR"

    def __init__(self, message: str, url: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, {"url": url, **(context or {})})
        self.url = url


class HttpError(MarketFeedError):
    """Non-2xx response that was not (or no longer) retried"""

    code = "HTTP_ERROR"

    def __init__(self, status: int, url: str, body: Any, message: str):
        super().__init__(message, {"status": status, "url": url})
        self.status = status
        self.url = url
        self.body = body

    def to_dict(self) -> Dict[str, Any]:
        info = super().to_dict()
        info["body"] = error_body_message(self.body)
        return info


class RateLimitError(HttpError):
    """HTTP 429 that persisted through every retry"""

    code = "RATE_LIMIT_ERROR"


class ValidationError(MarketFeedError):
    """Malformed payload; callers drop it and keep going"""

    code = "VALIDATION_ERROR"


class FeedError(MarketFeedError):
    code = "FEED_ERROR"


class GapDetected(MarketFeedError):
    """A diff cannot be applied on top of the local book"""

    code = "GAP_DETECTED"

    def __init__(self, instrument_id: str, reason: str):
        super().__init__(f"{instrument_id}: {reason}", {"instrument_id": instrument_id, "reason": reason})
        self.instrument_id = instrument_id
        self.reason = reason


class FatalInitError(MarketFeedError):
    """The venue could not be reached at startup"""

    code = "FATAL_INIT_ERROR"


def error_body_message(body: Any, limit: int = 200) -> str:
    """Best-effort human-readable message from an error response body"""
    if body is None or body == "":
        return ""
    if isinstance(body, str):
        return body[:limit]
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value[:limit]
    try:
        return json.dumps(body)[:limit]
    except (TypeError, ValueError):
        return str(body)[:limit]


def get_error_info(err: BaseException) -> Dict[str, Any]:
    """Structured summary of any exception, for log lines"""
    if isinstance(err, MarketFeedError):
        return err.to_dict()
    return {"name": type(err).__name__, "message": str(err)}
