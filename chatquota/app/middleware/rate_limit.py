"""Request count rate limiting middleware.

Anonymous callers get a fixed number of generation requests per sliding
window on the configured path prefixes. Authenticated callers are metered
by their token budget instead and pass through untouched.

The limit is checked before the handler runs; a request is charged only
once the handler has returned a successful response, so rejected and
failed requests do not use up the allowance.
"""

from typing import Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from chatquota.app.core.logging import get_log_context, get_logger
from chatquota.app.exceptions import RateLimitExceededError
from chatquota.app.services.rate_limit import CallerContext, RateLimitPolicy, get_client_ip

logger = get_logger(__name__)


def describe_window(policy: RateLimitPolicy) -> str:
    """Unit label such as ``"messages per 2 hours"``."""
    hours = policy.window_seconds / 3600
    if hours >= 1:
        amount = f"{hours:g}"
        return f"messages per {amount} hour{'' if amount == '1' else 's'}"
    minutes = max(1, round(policy.window_seconds / 60))
    return f"messages per {minutes} minute{'' if minutes == 1 else 's'}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce the anonymous request limit.

    Limits are keyed by client IP taken from the trusted forwarding header.
    The limiter and policies are read from ``app.state`` at request time
    because they are created by the application lifespan.
    """

    def __init__(self, app, path_prefixes: Optional[Iterable[str]] = None):
        super().__init__(app)
        self.path_prefixes = tuple(path_prefixes) if path_prefixes is not None else ("/api/chat",)

    def _applies_to(self, request: Request) -> bool:
        if request.method == "OPTIONS":
            return False
        path = request.url.path
        return any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in self.path_prefixes)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not self._applies_to(request):
            return await call_next(request)

        state = request.app.state
        settings = state.settings
        if settings.rate_limiting_disabled:
            return await call_next(request)

        caller = CallerContext.from_state(request.state)
        if caller.authenticated:
            return await call_next(request)

        identity = get_client_ip(
            request.headers,
            header_name=settings.client_ip_header,
            fallback=settings.fallback_client_ip,
        )
        policy = state.policies.requests
        limiter = state.rate_limiter
        result = await limiter.check(identity, policy)

        if result.blocked:
            error = RateLimitExceededError(result, authenticated=False, unit=describe_window(policy))
            logger.info(
                "Anonymous request limit reached",
                extra=get_log_context(
                    identity=identity,
                    policy=policy.key_prefix,
                    path=request.url.path,
                    method=request.method,
                    status_code=429,
                ),
            )
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response(),
                headers=result.to_headers(),
            )

        response = await call_next(request)

        # Only served requests use up the allowance
        if response.status_code < 400:
            result = await limiter.increment(identity, policy)
            for name, value in result.to_headers().items():
                if name != "Retry-After":
                    response.headers[name] = value
        return response
