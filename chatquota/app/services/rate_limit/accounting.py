"""Usage accounting.

Turns a completed request into a token cost and charges it against the
caller's token budget. Per-model multipliers let expensive models draw down
the budget faster without exposing the multiplier to the caller.
"""

import asyncio
import math
from typing import Any, Dict, List, Mapping, Optional

from chatquota.app.core.config import settings
from chatquota.app.core.logging import get_log_context, get_logger
from chatquota.app.core.tokenizer import count_message_tokens, count_tokens
from chatquota.app.exceptions import StoreError
from chatquota.app.services.rate_limit.limiter import RateLimiter, normalize_cost
from chatquota.app.services.rate_limit.models import RateLimitPolicy, RateLimitResult

logger = get_logger(__name__)

CONVERSATION_KEY_PREFIX = "conversation_tokens:"


class UsageAccountant:
    """Computes token costs and records them with the rate limiter."""

    def __init__(
        self,
        limiter: RateLimiter,
        model_multipliers: Optional[Mapping[str, float]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._limiter = limiter
        self._multipliers: Dict[str, float] = dict(model_multipliers or {})
        self._timeout = timeout if timeout is not None else settings.rate_limit_store_timeout

    def multiplier_for(self, model: Optional[str]) -> float:
        if not model:
            return 1.0
        return self._multipliers.get(model, 1.0)

    def effective_cost(self, tokens: Any, model: Optional[str] = None) -> int:
        """Tokens charged for a request after applying the model multiplier.

        Raises:
            InvalidCostError: If tokens is negative, non-finite or not a number
        """
        units = normalize_cost(tokens)
        return math.ceil(units * self.multiplier_for(model))

    def estimate_prompt_tokens(
        self,
        messages: List[Dict[str, Any]],
        system: Optional[str] = None,
        model: Optional[str] = None,
    ) -> int:
        """Estimate prompt size before a completion is requested."""
        return count_tokens(system or "", model) + count_message_tokens(messages, model)

    async def record_usage(
        self,
        identity: str,
        policy: RateLimitPolicy,
        prompt_tokens: int,
        completion_tokens: int = 0,
        model: Optional[str] = None,
    ) -> RateLimitResult:
        """Charge a finished request against the identity's token budget."""
        cost = self.effective_cost(
            normalize_cost(prompt_tokens) + normalize_cost(completion_tokens), model
        )
        result = await self._limiter.increment(identity, policy, cost)
        logger.debug(
            f"Recorded {cost} tokens ({prompt_tokens} prompt, {completion_tokens} completion, "
            f"model={model or '-'}): {result.used}/{result.limit}",
            extra=get_log_context(identity=identity, policy=policy.key_prefix, outcome=result.outcome.value),
        )
        return result

    # Conversation size tracking, shown to callers as a share of their remaining budget

    async def record_conversation_tokens(
        self, identity: str, tokens: int, ttl_seconds: int
    ) -> bool:
        """Remember the size of the caller's current conversation.

        The first write sets the TTL; later writes keep it so the record
        expires with the caller's window.
        """
        key = f"{CONVERSATION_KEY_PREFIX}{identity}"
        value = normalize_cost(tokens)
        store = self._limiter.store
        try:
            existing = await asyncio.wait_for(store.get(key), timeout=self._timeout)
            if existing is None:
                await asyncio.wait_for(
                    store.set_with_ttl(key, value, max(1, int(ttl_seconds))), timeout=self._timeout
                )
            else:
                await asyncio.wait_for(store.set_keepttl(key, value), timeout=self._timeout)
            return True
        except (StoreError, asyncio.TimeoutError) as e:
            logger.warning(
                f"Failed to record conversation tokens: {e!r}",
                extra=get_log_context(identity=identity, outcome="degraded"),
            )
            return False

    async def get_conversation_tokens(self, identity: str) -> Optional[int]:
        """Size of the caller's current conversation, or None when unknown."""
        key = f"{CONVERSATION_KEY_PREFIX}{identity}"
        try:
            raw = await asyncio.wait_for(self._limiter.store.get(key), timeout=self._timeout)
        except (StoreError, asyncio.TimeoutError) as e:
            logger.warning(
                f"Failed to read conversation tokens: {e!r}",
                extra=get_log_context(identity=identity, outcome="degraded"),
            )
            return None
        if raw is None:
            return None
        try:
            return max(0, int(raw))
        except (TypeError, ValueError):
            return None
