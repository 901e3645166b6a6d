"""Exception hierarchy for the Fairgate API client.

Every failure raised by the execution pipeline is a ``FairgateError`` so
callers can decide at a higher level which conditions to retry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fairgate.models.envelope import FieldError


class FairgateError(Exception):
    """Base exception for all Fairgate client errors."""

    pass


class MissingCredentialError(FairgateError):
    """Raised when no access key is available to issue a token."""

    pass


class MissingRefreshTokenError(FairgateError):
    """Raised when a token needs refreshing but no refresh token is held."""

    pass


class InvalidTokenError(FairgateError):
    """Raised when a token fails parsing, signature, algorithm or expiry checks."""

    pass


class InvalidRateLimitSignalError(FairgateError):
    """Raised when a 429 response carries no usable retry-after timestamp."""

    pass


class NonRewindableBodyError(FairgateError):
    """Raised when a request body cannot be replayed for a retry."""

    pass


class RateLimitError(FairgateError):
    """Raised when a rate-limited request cannot be retried."""

    pass


class TransportError(FairgateError):
    """Raised when the HTTP exchange fails at the network level."""

    pass


class DecodeError(FairgateError):
    """Raised when a response body is not a valid envelope."""

    pass


class UnexpectedStatusError(FairgateError):
    """Raised for any non-2xx response other than a rate-limit signal.

    The response body is not parsed.
    """

    def __init__(self, status_code: int, reason_phrase: str = ""):
        self.status_code = status_code
        self.reason_phrase = reason_phrase
        super().__init__(f"unexpected status code: {reason_phrase} ({status_code})")


class APIReportedError(FairgateError):
    """Aggregated failure reported by a ``success: false`` envelope.

    Combines the envelope message (if any) with every field-level error.
    """

    def __init__(
        self,
        message: str = "",
        field_errors: list[FieldError] | None = None,
        code: int = 0,
    ):
        self.message = message
        self.field_errors = list(field_errors or [])
        self.code = code

        parts = [message] if message else []
        parts.extend(str(e) for e in self.field_errors)
        super().__init__("\n".join(parts) or f"request failed with code {code}")
