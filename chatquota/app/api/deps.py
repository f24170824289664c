"""FastAPI dependencies for rate limited routes.

The limiter, policies and accountant are created by the application
lifespan and kept on ``app.state``; these helpers hand them to routes.
"""

from fastapi import Depends, Request

from chatquota.app.core.config import Settings
from chatquota.app.exceptions import RateLimitExceededError
from chatquota.app.services.rate_limit import (
    CallerContext,
    PolicyBook,
    RateLimiter,
    RateLimitPolicy,
    RateLimitResult,
    UsageAccountant,
    resolve_identity,
)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise RuntimeError("Rate limiter not initialized. Ensure lifespan context is active.")
    return limiter


def get_policies(request: Request) -> PolicyBook:
    return request.app.state.policies


def get_accountant(request: Request) -> UsageAccountant:
    accountant = getattr(request.app.state, "usage_accountant", None)
    if accountant is None:
        raise RuntimeError("Usage accountant not initialized. Ensure lifespan context is active.")
    return accountant


def get_caller(request: Request) -> CallerContext:
    """Caller as established by the upstream auth layer (anonymous when unset)."""
    return CallerContext.from_state(request.state)


def get_identity(
    request: Request,
    caller: CallerContext = Depends(get_caller),
    settings: Settings = Depends(get_settings),
) -> str:
    return resolve_identity(
        caller,
        request.headers,
        header_name=settings.client_ip_header,
        fallback=settings.fallback_client_ip,
    )


def get_token_policy(
    caller: CallerContext = Depends(get_caller),
    policies: PolicyBook = Depends(get_policies),
) -> RateLimitPolicy:
    return policies.for_tier(caller.tier)


async def enforce_token_quota(
    request: Request,
    caller: CallerContext = Depends(get_caller),
    identity: str = Depends(get_identity),
    policy: RateLimitPolicy = Depends(get_token_policy),
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_settings),
) -> RateLimitResult | None:
    """Pre-flight token budget check for expensive routes.

    Meant for the host application's completion route, which mounts this
    router and declares ``Depends(enforce_token_quota)`` so callers with no
    budget left are rejected before a completion is requested. The tokens
    actually used are charged afterwards via ``POST /api/rate-limit/usage``.

    Returns the quota state (None when rate limiting is disabled) and
    stores it on ``request.state.rate_limit``.

    Raises:
        RateLimitExceededError: If the caller has no budget left in the window
    """
    if settings.rate_limiting_disabled:
        return None
    result = await limiter.check(identity, policy)
    request.state.rate_limit = result
    if result.blocked:
        raise RateLimitExceededError(result, authenticated=caller.authenticated)
    return result
