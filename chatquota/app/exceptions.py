"""Custom exceptions for the rate limit service."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatquota.app.services.rate_limit.models import RateLimitResult


class ChatQuotaException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limit service error"):
        self.message = message
        super().__init__(message)


class RateLimitExceededError(ChatQuotaException):
    """Raised when a caller has used up the quota of the current window.

    Maps to HTTP 429 Too Many Requests. The message tells anonymous
    callers to sign in and authenticated callers to wait for the reset.
    """
    status_code = 429

    def __init__(
        self,
        result: RateLimitResult,
        authenticated: bool = False,
        unit: str = "tokens",
        detail: str | None = None,
    ):
        self.result = result
        self.authenticated = authenticated
        self.unit = unit
        if detail is None:
            detail = f"You've reached your limit of {result.limit} {unit}. "
            if authenticated:
                detail += "Please try again after your quota resets."
            else:
                detail += "Please try again later or sign in for extended access."
        super().__init__(detail)

    def to_response(self) -> dict:
        """Convert to API response body."""
        return {
            "error": "rate_limit_exceeded",
            "message": self.message,
            "limit": self.result.limit,
            "used": self.result.used,
            "remaining": self.result.remaining,
            "reset_time": self.result.reset_at.isoformat(),
            "authenticated": self.authenticated,
        }


class InvalidCostError(ChatQuotaException, ValueError):
    """Raised when a caller tries to charge a negative or non-finite cost.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400

    def __init__(self, cost: object):
        self.cost = cost
        super().__init__(f"Usage cost must be a finite, non-negative number, got {cost!r}")


class PolicyConfigurationError(ChatQuotaException):
    """Raised at startup when a rate limit policy is misconfigured."""
    status_code = 500


class StoreError(ChatQuotaException):
    """Raised by window stores when the backing store cannot be reached.

    The rate limiter turns this into a fail-open result; it never reaches
    the HTTP layer.
    """
    status_code = 503

    def __init__(self, message: str = "Window counter store unavailable"):
        super().__init__(message)
