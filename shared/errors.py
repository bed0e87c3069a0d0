"""
Shared error handling for the SoundCloud Access Gateway.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


INTERNAL_MESSAGE = "Internal server error"


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    model_config = ConfigDict(populate_by_name=True)

    code: str
    message: str
    status: int
    request_id: str = Field(alias="requestId")

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class GatewayError(Exception):
    """Base exception for gateway failures that map onto an HTTP status."""

    code = "INTERNAL"
    status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: str) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            status=self.status,
            request_id=request_id,
        )


class BadRequestError(GatewayError):
    """Client input is malformed or missing."""

    code = "BAD_REQUEST"
    status = 400

    def __init__(self, message: str = "Bad request", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class UnauthorizedError(GatewayError):
    """Missing or invalid bearer token."""

    code = "UNAUTHORIZED"
    status = 401

    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class ForbiddenError(GatewayError):
    """Route filtered out or CSRF check rejected."""

    code = "FORBIDDEN"
    status = 403

    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class NotFoundError(GatewayError):
    """No route matches the request path."""

    code = "NOT_FOUND"
    status = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class InvalidOrExpiredStateError(BadRequestError):
    """OAuth state unknown, already consumed or expired."""

    def __init__(
        self,
        message: str = "Invalid or expired OAuth state - the login session may have timed out. Please try again.",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)


class ConfigurationError(GatewayError):
    """The gateway is missing configuration required by the route."""

    def __init__(self, message: str = "Gateway misconfigured", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class InternalError(GatewayError):
    """Unexpected failure; the message is fixed so internals never leak."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(INTERNAL_MESSAGE, details)


_CODES_BY_STATUS = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
}


class UpstreamError(GatewayError):
    """The upstream API answered with an error; its status is preserved."""

    def __init__(
        self,
        message: str = "Upstream request failed",
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.status = status if isinstance(status, int) and 400 <= status <= 599 else 500
        self.code = _CODES_BY_STATUS.get(self.status, "INTERNAL")


def normalize_exception(exc: BaseException) -> GatewayError:
    """Map any raised object onto a :class:`GatewayError`."""
    if isinstance(exc, GatewayError):
        return exc

    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return UpstreamError(str(exc) or INTERNAL_MESSAGE, status=status)

    return InternalError(details={"error": str(exc)})


def describe_exception(exc: BaseException) -> str:
    """Human readable error text for telemetry records."""
    if isinstance(exc, GatewayError):
        return exc.message
    return str(exc) or INTERNAL_MESSAGE
