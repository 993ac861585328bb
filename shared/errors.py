"""
Shared error handling for the admission control service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


def current_trace_id() -> Optional[str]:
    """Return the hex trace ID of the active span, if one is recording."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            return f"{span_context.trace_id:032x}"
    return None


class AccessLayerException(Exception):
    """Base exception for admission control errors."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, trace_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=trace_id or current_trace_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ConfigurationError(AccessLayerException):
    """Invalid rate limit configuration. Raised at startup, never per request."""

    status_code = 500

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class RateLimitError(AccessLayerException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(
        self,
        message: str = "Too many requests, please try again later",
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        trace_id: Optional[str] = None,
    ):
        super().__init__("RATE_LIMIT_EXCEEDED", message, details)
        self.headers = headers or {}
        self.trace_id = trace_id

    def to_response(self, trace_id: Optional[str] = None) -> ErrorResponse:
        return super().to_response(trace_id or self.trace_id)
