"""Error taxonomy for remote document API calls and packet processing."""
import json
from typing import Any, Optional


class DocumentAPIError(Exception):
    """Base error for a failed remote document API call."""

    kind = "api_error"
    retryable = False

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.http_status = http_status

    def __str__(self) -> str:
        return self.message


class ValidationError(DocumentAPIError):
    """4xx: the request itself is invalid. Never retried without changing it."""

    kind = "validation"


class PayloadTooLargeError(ValidationError):
    """413: the document must be chunked or compressed before resubmitting."""

    kind = "payload_too_large"


class TransientError(DocumentAPIError):
    """Timeouts, 5xx, 429 and network failures."""

    kind = "transient"
    retryable = True

    def __init__(self, message: str, http_status: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, http_status)
        self.retry_after = retry_after

    @property
    def rate_limited(self) -> bool:
        return self.http_status == 429


class StreamTimeoutError(TransientError):
    """No data frame arrived on a streaming response within the inactivity window."""

    kind = "stream_timeout"


class JobTerminalError(DocumentAPIError):
    """An async job ended as failed, cancelled or expired."""

    kind = "job_terminal"

    def __init__(self, message: str, status: str):
        super().__init__(message)
        self.status = status


class JobPollingTimeoutError(TransientError):
    kind = "job_polling_timeout"


class ProcessingCancelled(Exception):
    """Raised inside a stage call when its cancellation token fires."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"Processing {reason}")
        self.reason = reason


def _error_message(body: Any, status: int) -> str:
    if isinstance(body, dict):
        for key in ("detail", "error", "message"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and value.get("message"):
                return str(value["message"])
            if isinstance(value, list) and value:
                # FastAPI-style validation detail
                return "; ".join(str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in value)
    return f"API error: {status}"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_from_response(status: int, text: str, retry_after: Optional[str] = None) -> DocumentAPIError:
    """Map an HTTP error response onto the error taxonomy."""
    stripped = (text or "").strip()
    if stripped.startswith("<") or stripped.lower().startswith("<!doctype"):
        body: Any = {}
        html = True
    else:
        html = False
        try:
            body = json.loads(stripped) if stripped else {}
        except json.JSONDecodeError:
            body = {}

    message = _error_message(body, status)
    if html:
        message = f"API error: {status}. Server returned HTML instead of JSON, the service may be unavailable."

    if status == 413:
        return PayloadTooLargeError(message or "Document too large", http_status=status)
    if status == 429:
        return TransientError(message, http_status=status, retry_after=_parse_retry_after(retry_after))
    if status == 408 or status >= 500:
        return TransientError(message, http_status=status)
    return ValidationError(message, http_status=status)
