"""Exception hierarchy for the Attio request core.

Every failure surfaced by the client belongs to one of five kinds:

- ``TransportError``: the request never produced a response (retryable).
- ``ServerError`` / ``RateLimitError``: the remote side failed or throttled (retryable).
- ``ClientError``: the request itself was rejected (not retryable).
- ``ResponseValidationError``: a payload did not match its expected shape.
- ``OperationCancelledError``: the cancellation signal guarding the call fired.

``normalize_error`` maps raw transport exceptions and error payloads into this
hierarchy so the retry executor can classify them without knowing about httpx.
"""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import httpx

_REQUEST_ID_HEADERS = ("x-request-id", "x-attio-request-id")
_DEFAULT_MESSAGE = "Request failed."


class AttioError(Exception):
    """Base exception for all errors raised by attio_core."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        type: str | None = None,  # noqa: A002
        request_id: str | None = None,
        data: Any = None,
        retry_after: float | None = None,
    ) -> None:
        """Initialize with a message and optional API error details."""
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.type = type
        self.request_id = request_id
        self.data = data
        self.retry_after = retry_after
        self.request: httpx.Request | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status={self.status!r})"


class ConfigurationError(AttioError):
    """Raised when settings are missing or invalid."""


class TransportError(AttioError):
    """Raised when no response was received (connection, DNS, protocol errors)."""


class APIError(AttioError):
    """Raised when the API answered with an error status."""

    def __init__(
        self,
        message: str,
        *,
        response: httpx.Response | None = None,
        **details: Any,
    ) -> None:
        """Initialize with the originating response, if any."""
        super().__init__(message, **details)
        self.response = response


class ClientError(APIError):
    """4xx response other than rate limiting; the request must be changed."""


class RateLimitError(APIError):
    """429 response; ``retry_after`` holds the server hint in seconds."""


class ServerError(APIError):
    """5xx response."""


class ResponseValidationError(AttioError):
    """Raised when a payload does not match the expected schema."""

    def __init__(
        self,
        message: str,
        *,
        errors: list[dict[str, Any]] | None = None,
        **details: Any,
    ) -> None:
        """Initialize with the validator's error list."""
        super().__init__(message, **details)
        self.errors = errors or []


class OperationCancelledError(AttioError):
    """Raised when an operation stops because its cancellation signal fired."""


class RequestTimeoutError(OperationCancelledError):
    """Raised when the internally generated request timeout fires."""


def api_error_class(status: int) -> type[APIError]:
    """Return the APIError subclass matching an HTTP status code."""
    if status == 429:
        return RateLimitError
    if status >= 500:
        return ServerError
    if status >= 400:
        return ClientError
    return APIError


def parse_retry_after(response: httpx.Response | None) -> float | None:
    """Parse a ``Retry-After`` header into seconds.

    Accepts both the delta-seconds and HTTP-date forms. Negative values are
    clamped to zero; unparseable values yield ``None``.
    """
    if response is None:
        return None
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def _extract_message(error: object, fallback: str | None) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, BaseException) and str(error):
        return str(error)
    return fallback or _DEFAULT_MESSAGE


def _extract_details(error: object) -> dict[str, Any]:
    if not isinstance(error, dict):
        return {}
    status = error.get("status_code", error.get("status"))
    return {
        "code": error["code"] if isinstance(error.get("code"), str) else None,
        "type": error["type"] if isinstance(error.get("type"), str) else None,
        "status": status if isinstance(status, int) else None,
        "data": error,
    }


def normalize_error(
    error: object,
    *,
    response: httpx.Response | None = None,
    request: httpx.Request | None = None,
) -> AttioError:
    """Convert an arbitrary failure into an ``AttioError``.

    Args:
        error: A raised exception, a decoded error payload, or a message string.
        response: The HTTP response, when the server answered.
        request: The request that failed, kept on the error for diagnostics.

    Returns:
        An ``APIError`` subclass when a response is available, otherwise a
        ``TransportError``. ``AttioError`` instances are returned unchanged.
    """
    if isinstance(error, AttioError):
        return error

    details = _extract_details(error)

    if response is not None:
        status = response.status_code
        message = _extract_message(error, response.reason_phrase or None)
        request_id = next(
            (
                response.headers[name]
                for name in _REQUEST_ID_HEADERS
                if name in response.headers
            ),
            None,
        )
        api_error = api_error_class(status)(
            message,
            response=response,
            status=status,
            code=details.get("code"),
            type=details.get("type"),
            request_id=request_id,
            data=details.get("data", error),
            retry_after=parse_retry_after(response),
        )
        api_error.request = request
        return api_error

    network_error = TransportError(
        _extract_message(error, None),
        code=details.get("code"),
        type=details.get("type"),
        status=details.get("status"),
        data=details.get("data"),
    )
    network_error.request = request
    return network_error
