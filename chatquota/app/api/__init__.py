"""API endpoints package for the rate limit service."""

from chatquota.app.api.rate_limit import router as rate_limit_router

__all__ = [
    "rate_limit_router",
]
