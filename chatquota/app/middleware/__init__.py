"""Middleware package for the rate limit service."""

from chatquota.app.middleware.rate_limit import RateLimitMiddleware
from chatquota.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
