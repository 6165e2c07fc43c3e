"""Structured error codes and responses for the agent gateway."""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class GatewayError:
    """Structured error response."""
    code: str
    message: str
    suggestion: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "error": self.message,
            "code": self.code,
        }
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result


# Error codes
class ErrorCodes:
    """Gateway error codes."""
    INVALID_REQUEST = "INVALID_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMIT_EXCEEDED"
    REMOTE_ERROR = "REMOTE_ERROR"
    REMOTE_UNAVAILABLE = "REMOTE_UNAVAILABLE"


def invalid_request(field: str, reason: str) -> GatewayError:
    """Create error for invalid request data."""
    return GatewayError(
        code=ErrorCodes.INVALID_REQUEST,
        message=f"Invalid request: {field} - {reason}",
        suggestion="Check the tool documentation for required parameters.",
    )


def missing_credential() -> GatewayError:
    """Create error for a request that resolved to no credential.

    The message is the same whether no credential was sent or a token failed
    to decode, so error text reveals nothing about token validity.
    """
    return GatewayError(
        code=ErrorCodes.UNAUTHORIZED,
        message="No API key available for this request.",
        suggestion=(
            "Provide an Authorization: Bearer key_... header, an x-cursor-api-key header, "
            "or a token from /connect via ?token= or the x-mcp-token header."
        ),
    )


def remote_unavailable(api_url: str, original_error: str = "") -> GatewayError:
    """Create error for a transport failure talking to the agent service."""
    message = f"Cannot connect to the agent service at {api_url}."
    if original_error:
        message = f"{message} Error: {original_error}"

    return GatewayError(
        code=ErrorCodes.REMOTE_UNAVAILABLE,
        message=message,
        suggestion="Check network connectivity and the CURSOR_API_URL environment variable.",
    )


class ValidationError(ValueError):
    """Raised when caller input is rejected before reaching the agent service."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.status_code = 400


class ApiError(Exception):
    """Raised when the agent service answers with an error status."""

    default_code: Optional[str] = None

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        response: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code or self.default_code
        self.response = response


class AuthenticationError(ApiError):
    """Invalid or missing API key (401)."""
    default_code = ErrorCodes.UNAUTHORIZED


class AuthorizationError(ApiError):
    """Insufficient permissions (403)."""
    default_code = ErrorCodes.FORBIDDEN


class NotFoundError(ApiError):
    """Resource not found (404)."""
    default_code = ErrorCodes.NOT_FOUND


class ConflictError(ApiError):
    """Conflict with current state (409)."""
    default_code = ErrorCodes.CONFLICT


class RateLimitError(ApiError):
    """Rate limit exceeded (429)."""
    default_code = ErrorCodes.RATE_LIMITED


_STATUS_ERRORS = {
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    429: RateLimitError,
}


def api_error_for_status(
    status_code: int,
    message: str,
    code: Optional[str] = None,
    response: Any = None,
) -> Exception:
    """Map an HTTP error status from the agent service to an exception.

    400 becomes a ValidationError (the service rejected our input); the other
    well-known statuses get their ApiError subclass; anything else is a plain
    ApiError carrying the status.
    """
    if status_code == 400:
        return ValidationError(message)
    error_cls = _STATUS_ERRORS.get(status_code, ApiError)
    return error_cls(message, status_code=status_code, code=code, response=response)


class RemoteUnavailableError(Exception):
    """Raised when the agent service cannot be reached (network, DNS, timeout)."""

    def __init__(self, api_url: str, original_error: Exception):
        self.api_url = api_url
        self.original_error = original_error
        err = remote_unavailable(api_url, str(original_error))
        super().__init__(f"{err.message} {err.suggestion}")


def describe_exception(exc: BaseException) -> str:
    """Render an exception as the text a tool caller sees."""
    if isinstance(exc, ValidationError):
        suffix = f" (field: {exc.field})" if exc.field else ""
        return f"Validation Error: {exc.message}{suffix}"
    if isinstance(exc, ApiError):
        suffix = f" [{exc.code}]" if exc.code else ""
        return f"API Error ({exc.status_code}): {exc.message}{suffix}"
    if isinstance(exc, RemoteUnavailableError):
        return f"Network Error: Unable to connect to the agent service at {exc.api_url}."
    return f"Unexpected Error: {exc}"
