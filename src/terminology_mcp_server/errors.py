"""Exception hierarchy shared by the transport, clients, and dispatcher.

Every failure that reaches a caller is a ``TerminologyApiError`` carrying an
``ErrorCode``. The transport adapter decides which failures are transient
(``UpstreamTransportError``) and attaches HTTP status codes; the retry
executor reads those attributes and never inspects message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Error codes surfaced to callers."""

    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    API_ERROR = "API_ERROR"
    AUTH_CONFIG_ERROR = "AUTH_CONFIG_ERROR"
    AUTH_EXPIRED = "AUTH_EXPIRED"


class TerminologyApiError(Exception):
    """Base exception for all upstream terminology failures."""

    code: ErrorCode = ErrorCode.API_ERROR

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: object | None = None,
    ) -> None:
        """Initialize terminology API error.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code if applicable.
            details: Truncated response body or other context.
        """
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, object]:
        """Structured form returned by the dispatcher."""
        return {
            "code": self.code.value,
            "message": self.message,
            "status_code": self.status_code,
        }


class NotFoundError(TerminologyApiError):
    """404: valid request, no such resource."""

    code = ErrorCode.NOT_FOUND


class RateLimitError(TerminologyApiError):
    """429: the upstream itself rejected the request."""

    code = ErrorCode.RATE_LIMIT


class UpstreamApiError(TerminologyApiError):
    """Any other non-2xx response or a malformed payload."""

    code = ErrorCode.API_ERROR


class AuthConfigError(TerminologyApiError):
    """Credentials missing at client construction."""

    code = ErrorCode.AUTH_CONFIG_ERROR


class AuthExpiredError(TerminologyApiError):
    """401: the bearer credential was rejected mid-flight."""

    code = ErrorCode.AUTH_EXPIRED


class UpstreamTransportError(TerminologyApiError):
    """Connection reset/refused, timeout, DNS failure, or closed socket.

    Reported to callers as API_ERROR. The retry executor always retries these,
    regardless of the configured status codes.
    """

    code = ErrorCode.API_ERROR
