"""Error hierarchy and provider error classification.

Provider failures are raised once at the HTTP boundary as
``ProviderHTTPError`` and turned into a ``CalendarSyncError`` by
:func:`classify_error`.  The classified error carries everything the retry
layer and the audit log need: the error kind, whether a retry may help, and
the delay the provider suggested.
"""

from __future__ import annotations

import re
from enum import StrEnum

import httpx

RATE_LIMIT_DEFAULT_DELAY_SECONDS = 10.0
QUOTA_DEFAULT_DELAY_SECONDS = 60.0
SERVER_ERROR_DELAY_SECONDS = 5.0
NETWORK_ERROR_DELAY_SECONDS = 3.0

SERVER_ERROR_STATUS_CODES = {500, 502, 503, 504}

_NETWORK_ERROR_MARKERS = ("ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND")
_QUOTA_MARKERS = ("quota", "rate")


class ErrorKind(StrEnum):
    """Classified provider error categories."""

    RATE_LIMIT = "RATE_LIMIT"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"


class ProviderHTTPError(RuntimeError):
    """Raised when a Google API request returns a non-success status."""

    def __init__(
        self,
        *,
        status_code: int,
        message: str,
        retry_after: float | None = None,
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after
        super().__init__(f"Google API request failed ({status_code}): {message}")


class CalendarSyncError(RuntimeError):
    """A classified failure: kind, retryability and suggested delay."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        retryable: bool,
        retry_after: float | None = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message
        self.kind = kind
        self.retryable = retryable
        self.retry_after = retry_after
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Serializable form used in sync log error details and API bodies."""
        return {
            "kind": str(self.kind),
            "message": redact_credentials(self.message),
            "retryable": self.retryable,
            "retry_after": self.retry_after,
            "status_code": self.status_code,
        }


class TokenRefreshError(CalendarSyncError):
    """Raised when a refresh-token exchange fails. Fatal for the operation."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(
            message,
            kind=ErrorKind.UNAUTHORIZED,
            retryable=False,
            status_code=status_code,
        )


class SyncTokenExpiredError(CalendarSyncError):
    """Raised when a sync cursor is rejected (HTTP 410); caller should do a window fetch."""

    def __init__(self, message: str = "Sync token is no longer valid") -> None:
        super().__init__(message, kind=ErrorKind.UNKNOWN, retryable=False, status_code=410)


class UnknownChannelError(LookupError):
    """Raised when a push notification names a channel no calendar owns."""

    def __init__(self, channel_id: str) -> None:
        self.channel_id = channel_id
        super().__init__(f"No calendar is registered for channel {channel_id!r}")


class CalendarNotFoundError(LookupError):
    """Raised when a calendar record does not exist."""

    def __init__(self, calendar_id: str) -> None:
        self.calendar_id = calendar_id
        super().__init__(f"Calendar not found: {calendar_id}")


class LedgerConflictError(RuntimeError):
    """Raised by the store when a ledger key already holds an entry."""


def classify_error(exc: BaseException) -> CalendarSyncError:
    """Translate any raised error into a :class:`CalendarSyncError`.

    Already-classified errors pass through unchanged.
    """
    if isinstance(exc, CalendarSyncError):
        return exc

    if isinstance(exc, ProviderHTTPError):
        return _classify_status(exc.status_code, exc.message, exc.retry_after)

    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(
            exc.response.status_code,
            str(exc),
            parse_retry_after(exc.response.headers.get("Retry-After")),
        )

    if _is_network_error(exc):
        return CalendarSyncError(
            f"Network error: {exc}",
            kind=ErrorKind.NETWORK_ERROR,
            retryable=True,
            retry_after=NETWORK_ERROR_DELAY_SECONDS,
        )

    return CalendarSyncError(
        str(exc) or type(exc).__name__,
        kind=ErrorKind.UNKNOWN,
        retryable=False,
    )


def _classify_status(
    status_code: int,
    message: str,
    retry_after: float | None,
) -> CalendarSyncError:
    if status_code == 401:
        return CalendarSyncError(
            "Authentication failed. Token may be expired.",
            kind=ErrorKind.UNAUTHORIZED,
            retryable=True,
            status_code=status_code,
        )

    if status_code == 403:
        lowered = message.lower()
        if any(marker in lowered for marker in _QUOTA_MARKERS):
            return CalendarSyncError(
                "Rate limit exceeded. Please try again later.",
                kind=ErrorKind.RATE_LIMIT,
                retryable=True,
                retry_after=retry_after if retry_after is not None else QUOTA_DEFAULT_DELAY_SECONDS,
                status_code=status_code,
            )
        return CalendarSyncError(
            "Access forbidden. Check calendar permissions.",
            kind=ErrorKind.FORBIDDEN,
            retryable=False,
            status_code=status_code,
        )

    if status_code == 404:
        return CalendarSyncError(
            "Resource not found.",
            kind=ErrorKind.NOT_FOUND,
            retryable=False,
            status_code=status_code,
        )

    if status_code == 429:
        return CalendarSyncError(
            "Too many requests. Please slow down.",
            kind=ErrorKind.RATE_LIMIT,
            retryable=True,
            retry_after=(
                retry_after if retry_after is not None else RATE_LIMIT_DEFAULT_DELAY_SECONDS
            ),
            status_code=status_code,
        )

    if status_code in SERVER_ERROR_STATUS_CODES:
        return CalendarSyncError(
            "Google Calendar service is temporarily unavailable.",
            kind=ErrorKind.SERVER_ERROR,
            retryable=True,
            retry_after=SERVER_ERROR_DELAY_SECONDS,
            status_code=status_code,
        )

    return CalendarSyncError(
        message or f"Request failed with status {status_code}",
        kind=ErrorKind.UNKNOWN,
        retryable=status_code >= 500,
        status_code=status_code,
    )


def _is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError | ConnectionError | TimeoutError):
        return True
    text = str(exc)
    return any(marker in text for marker in _NETWORK_ERROR_MARKERS)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds; None when absent or unusable."""
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


def redact_credentials(message: str) -> str:
    """Redact OAuth credential values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted
