"""
Shared error handling for the Cloaking Gateway.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    success: bool = False
    request_id: Optional[str] = None
    code: str
    message: str
    error: Optional[str] = None
    details: Dict[str, Any] = {}


class GatewayException(Exception):
    """Base exception for Cloaking Gateway services."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, message: Optional[str] = None) -> ErrorResponse:
        """Convert to error response.

        ``message`` overrides the user-facing message; the exception's own
        message is always kept under ``error``.
        """
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=message or self.message,
            error=self.message,
            details=self.details
        )


class AuthenticationError(GatewayException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(GatewayException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(GatewayException):
    """Validation-related errors."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ConfigurationError(GatewayException):
    """Required configuration is missing; never retried."""

    status_code = 500

    def __init__(self, message: str = "Configuration error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class UpstreamError(GatewayException):
    """Base for failures talking to the upstream cloaking API."""

    status_code = 502

    def __init__(self, code: str, endpoint: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.endpoint = endpoint
        merged = {"endpoint": endpoint}
        merged.update(details or {})
        super().__init__(code, message, merged)


class UpstreamHTTPError(UpstreamError):
    """Non-retryable HTTP failure, or retryable statuses after attempts ran out."""

    def __init__(self, endpoint: str, status: int, body: str, attempts: int = 1):
        self.status = status
        self.body = body
        self.attempts = attempts
        super().__init__(
            "UPSTREAM_HTTP_ERROR",
            endpoint,
            f"API request failed: {status} {body}",
            {"status": status, "attempts": attempts},
        )


class UpstreamTransportError(UpstreamError):
    """Network-level fault that persisted through every attempt."""

    def __init__(self, endpoint: str, cause: Exception, attempts: int = 1, timed_out: bool = False):
        self.cause = cause
        self.attempts = attempts
        self.timed_out = timed_out
        super().__init__(
            "UPSTREAM_TRANSPORT_ERROR",
            endpoint,
            f"Upstream unreachable: {type(cause).__name__}: {cause}",
            {"cause": type(cause).__name__, "attempts": attempts, "timed_out": timed_out},
        )


class UpstreamDecodeError(UpstreamError):
    """Response body was not valid JSON, even though the transport succeeded."""

    def __init__(self, endpoint: str, body: str, reason: str):
        self.body = body
        super().__init__(
            "UPSTREAM_DECODE_ERROR",
            endpoint,
            f"JSON parse failed: {reason}",
            {"body_preview": body[:200]},
        )
