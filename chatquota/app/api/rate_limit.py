"""Rate limit status and usage recording endpoints.

``GET /api/rate-limit/status`` lets the chat UI render the caller's budget.
``POST /api/rate-limit/usage`` is called by the completion proxy once a
request has finished, with the token counts it observed.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chatquota.app.api.deps import (
    get_accountant,
    get_caller,
    get_identity,
    get_rate_limiter,
    get_settings,
    get_token_policy,
)
from chatquota.app.core.config import Settings
from chatquota.app.core.logging import get_log_context, get_logger
from chatquota.app.services.rate_limit import (
    CallerContext,
    RateLimiter,
    RateLimitPolicy,
    RateLimitResult,
    UsageAccountant,
    format_time_until_reset,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/rate-limit", tags=["rate-limit"])

NEUTRAL_RESET_SECONDS = 24 * 60 * 60


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RateLimitStatus(_CamelModel):
    """Budget summary rendered by the chat UI."""
    usage_percentage: int = 0
    remaining_percentage: int = 100
    reset_time: datetime
    reset_in: str
    blocked: bool = False
    authenticated: bool = False
    conversation_token_percentage: int = 0
    show_conversation_warning: bool = False


class UsageReport(_CamelModel):
    """Token counts observed for a finished completion."""
    prompt_tokens: int = Field(ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    model: Optional[str] = None
    conversation_tokens: Optional[int] = Field(default=None, ge=0)


class UsageResult(_CamelModel):
    limit: int
    used: int
    remaining: int
    reset_time: datetime
    blocked: bool


def _neutral_status(authenticated: bool) -> RateLimitStatus:
    now = time.time()
    return RateLimitStatus(
        reset_time=datetime.now(timezone.utc) + timedelta(seconds=NEUTRAL_RESET_SECONDS),
        reset_in=format_time_until_reset(now + NEUTRAL_RESET_SECONDS, now),
        authenticated=authenticated,
    )


def build_status(
    result: RateLimitResult,
    authenticated: bool,
    conversation_tokens: Optional[int],
    warning_percentage: int,
    now: Optional[float] = None,
) -> RateLimitStatus:
    """Project a quota result onto the percentages shown to the caller."""
    usage_percentage = result.usage_percentage
    conversation_percentage = 0
    show_warning = False
    if conversation_tokens:
        remaining_tokens = result.limit - result.used
        if remaining_tokens > 0:
            conversation_percentage = round(conversation_tokens / remaining_tokens * 100)
        else:
            conversation_percentage = 100
        show_warning = conversation_percentage >= warning_percentage

    return RateLimitStatus(
        usage_percentage=usage_percentage,
        remaining_percentage=max(0, 100 - usage_percentage),
        reset_time=result.reset_at,
        reset_in=format_time_until_reset(result.reset_time, now),
        blocked=result.blocked,
        authenticated=authenticated,
        conversation_token_percentage=conversation_percentage,
        show_conversation_warning=show_warning,
    )


@router.get("/status", response_model=RateLimitStatus)
async def rate_limit_status(
    caller: CallerContext = Depends(get_caller),
    identity: str = Depends(get_identity),
    policy: RateLimitPolicy = Depends(get_token_policy),
    limiter: RateLimiter = Depends(get_rate_limiter),
    accountant: UsageAccountant = Depends(get_accountant),
    settings: Settings = Depends(get_settings),
) -> RateLimitStatus:
    """Current token budget of the caller."""
    if settings.rate_limiting_disabled:
        return _neutral_status(authenticated=True)

    try:
        result = await limiter.check(identity, policy)
        conversation_tokens = await accountant.get_conversation_tokens(identity)
        return build_status(
            result,
            authenticated=caller.authenticated,
            conversation_tokens=conversation_tokens,
            warning_percentage=settings.conversation_warning_percentage,
        )
    except Exception as e:
        logger.exception(
            f"Rate limit status error: {e}",
            extra=get_log_context(identity=identity, tier=caller.tier.value),
        )
        return _neutral_status(authenticated=False)


@router.post("/usage", response_model=UsageResult)
async def record_usage(
    report: UsageReport,
    response: Response,
    identity: str = Depends(get_identity),
    policy: RateLimitPolicy = Depends(get_token_policy),
    accountant: UsageAccountant = Depends(get_accountant),
    settings: Settings = Depends(get_settings),
) -> UsageResult:
    """Charge a finished completion against the caller's token budget."""
    result = await accountant.record_usage(
        identity,
        policy,
        prompt_tokens=report.prompt_tokens,
        completion_tokens=report.completion_tokens,
        model=report.model,
    )
    if report.conversation_tokens is not None:
        await accountant.record_conversation_tokens(
            identity,
            report.conversation_tokens,
            ttl_seconds=settings.rate_limit_window_seconds,
        )

    for name, value in result.to_headers().items():
        if name != "Retry-After":
            response.headers[name] = value

    return UsageResult(
        limit=result.limit,
        used=result.used,
        remaining=result.remaining,
        reset_time=result.reset_at,
        blocked=result.blocked,
    )
