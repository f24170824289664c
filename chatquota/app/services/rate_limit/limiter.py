"""Window based rate limiter over a remote counter store.

One limiter serves both meters: TOKEN_COST policies use a fixed window
anchored at first use and expired by the store's TTL, COUNT policies use a
sliding window over a sorted set of request timestamps.

Store failures and timeouts never reach the caller: the limiter logs them
and returns a fail-open result tagged ``Outcome.DEGRADED``.

Known property: fixed window increments read and then write the counter in
two separate round trips, so concurrent increments for the same identity
can lose updates (last write wins). Sliding window increments add distinct
members and never overwrite each other.
"""

import asyncio
import math
import time
import uuid
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from chatquota.app.core.config import settings
from chatquota.app.core.logging import get_log_context, get_logger
from chatquota.app.exceptions import InvalidCostError, StoreError
from chatquota.app.services.rate_limit.models import (
    MeterKind,
    RateLimitPolicy,
    RateLimitResult,
    WindowState,
)
from chatquota.app.services.rate_limit.store import StoreOp, WindowCounterStore

logger = get_logger(__name__)

T = TypeVar("T")

START_KEY_SUFFIX = ":start"


def normalize_cost(cost: Any) -> int:
    """Validate a usage cost and round fractional values up.

    Raises:
        InvalidCostError: If cost is negative, non-finite or not a number
    """
    if isinstance(cost, bool) or not isinstance(cost, (int, float)):
        raise InvalidCostError(cost)
    if isinstance(cost, float) and not math.isfinite(cost):
        raise InvalidCostError(cost)
    if cost < 0:
        raise InvalidCostError(cost)
    return math.ceil(cost)


def _parse_counter(raw: Any) -> Optional[int]:
    """Parse a stored integer, treating missing or corrupt values as absent."""
    if raw is None:
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    if value < 0:
        return None
    return value


def _oldest_score(entries: Any) -> Optional[float]:
    if not entries:
        return None
    try:
        return float(entries[0][1])
    except (TypeError, ValueError, IndexError):
        return None


def _is_blocked(projected_used: int, limit: int) -> bool:
    # Shared boundary rule: blocked once projected usage goes past the limit.
    return projected_used > limit


class RateLimiter:
    """Rate limiter for fixed window token budgets and sliding window request counts.

    Example:
        >>> limiter = RateLimiter(InMemoryWindowStore())
        >>> result = await limiter.increment("1.2.3.4", policy, cost=120)
        >>> result.blocked
        False
    """

    def __init__(
        self,
        store: WindowCounterStore,
        clock: Callable[[], float] = time.time,
        timeout: Optional[float] = None,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            store: Window counter store shared by all requests of the process
            clock: Returns the current time in epoch seconds
            timeout: Upper bound in seconds for every store call
        """
        self._store = store
        self._clock = clock
        self._timeout = timeout if timeout is not None else settings.rate_limit_store_timeout

    @property
    def store(self) -> WindowCounterStore:
        return self._store

    async def check(self, identity: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Report the current quota state without charging anything.

        ``blocked`` is True when not even one more unit fits in the window.
        """
        self._require_identity(identity)
        if policy.meter is MeterKind.COUNT:
            operation = self._check_sliding
        else:
            operation = self._check_fixed
        return await self._guarded("check", identity, policy, lambda now: operation(identity, policy, now))

    async def increment(
        self,
        identity: str,
        policy: RateLimitPolicy,
        cost: Any = 1,
    ) -> RateLimitResult:
        """Charge ``cost`` units and return the post-charge quota state.

        A zero cost performs no writes. ``blocked`` is True when the charge
        took usage past the limit; the charge is recorded regardless.

        Raises:
            InvalidCostError: If cost is negative, non-finite or not a number
        """
        self._require_identity(identity)
        units = normalize_cost(cost)
        if policy.meter is MeterKind.COUNT:
            operation = self._increment_sliding
        else:
            operation = self._increment_fixed
        return await self._guarded(
            "increment", identity, policy, lambda now: operation(identity, policy, units, now)
        )

    @staticmethod
    def _require_identity(identity: str) -> None:
        if not identity:
            raise ValueError("Rate limit identity must not be empty")

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    async def _guarded(
        self,
        operation: str,
        identity: str,
        policy: RateLimitPolicy,
        run: Callable[[float], Awaitable[RateLimitResult]],
    ) -> RateLimitResult:
        now = self._clock()
        context = get_log_context(identity=identity, policy=policy.key_prefix, outcome="degraded")
        try:
            return await run(now)
        except asyncio.TimeoutError:
            logger.warning(
                f"Rate limit {operation} timed out after {self._timeout}s. "
                "Request allowed without rate limit check.",
                extra=context,
            )
        except StoreError as e:
            logger.warning(
                f"Rate limit {operation} failed: {e}. "
                "Request allowed without rate limit check.",
                extra=context,
            )
        except Exception as e:
            logger.exception(f"Unexpected rate limit {operation} error: {e}", extra=context)
        return RateLimitResult.fail_open(policy, now)

    # Fixed window (token cost)

    async def _read_fixed_window(
        self, identity: str, policy: RateLimitPolicy, now_ms: int
    ) -> Optional[WindowState]:
        used_key = policy.key_for(identity)
        start_key = used_key + START_KEY_SUFFIX
        used_raw, start_raw = await self._call(
            self._store.pipeline([StoreOp.get(used_key), StoreOp.get(start_key)])
        )
        start_ms = _parse_counter(start_raw)
        if start_ms is None or start_ms + policy.window_ms <= now_ms:
            return None
        return WindowState(used=_parse_counter(used_raw) or 0, window_start=start_ms / 1000)

    async def _check_fixed(
        self, identity: str, policy: RateLimitPolicy, now: float
    ) -> RateLimitResult:
        state = await self._read_fixed_window(identity, policy, int(now * 1000))
        if state is None:
            used, reset_time = 0, now + policy.window_seconds
        else:
            used, reset_time = state.used, state.window_start + policy.window_seconds
        return RateLimitResult(
            limit=policy.max_units,
            used=used,
            reset_time=reset_time,
            blocked=_is_blocked(used + 1, policy.max_units),
        )

    async def _increment_fixed(
        self, identity: str, policy: RateLimitPolicy, cost: int, now: float
    ) -> RateLimitResult:
        now_ms = int(now * 1000)
        state = await self._read_fixed_window(identity, policy, now_ms)

        if cost == 0:
            used = state.used if state else 0
            reset_time = state.window_start + policy.window_seconds if state else now + policy.window_seconds
            return RateLimitResult(
                limit=policy.max_units,
                used=used,
                reset_time=reset_time,
                blocked=_is_blocked(used, policy.max_units),
            )

        if state is None:
            start_ms, used = now_ms, 0
        else:
            start_ms, used = int(round(state.window_start * 1000)), state.used

        new_used = used + cost
        reset_ms = start_ms + policy.window_ms
        ttl_seconds = max(1, math.ceil((reset_ms - now_ms) / 1000))

        used_key = policy.key_for(identity)
        await self._call(
            self._store.pipeline([
                StoreOp.set_with_ttl(used_key, new_used, ttl_seconds),
                StoreOp.set_with_ttl(used_key + START_KEY_SUFFIX, start_ms, ttl_seconds),
            ])
        )

        blocked = _is_blocked(new_used, policy.max_units)
        if blocked:
            logger.info(
                f"Token quota exceeded: {new_used}/{policy.max_units}",
                extra=get_log_context(identity=identity, policy=policy.key_prefix, outcome="enforced"),
            )
        return RateLimitResult(
            limit=policy.max_units,
            used=new_used,
            reset_time=reset_ms / 1000,
            blocked=blocked,
        )

    # Sliding window (request count)

    @staticmethod
    def _prune_op(key: str, policy: RateLimitPolicy, now_ms: int) -> StoreOp:
        # Members exactly one window old still count
        return StoreOp.zremrangebyscore(key, "-inf", f"({now_ms - policy.window_ms}")

    @staticmethod
    def _sliding_reset(oldest_ms: Optional[float], policy: RateLimitPolicy, now: float) -> float:
        if oldest_ms is None:
            return now + policy.window_seconds
        return (oldest_ms + policy.window_ms) / 1000

    async def _check_sliding(
        self, identity: str, policy: RateLimitPolicy, now: float
    ) -> RateLimitResult:
        key = policy.key_for(identity)
        now_ms = int(now * 1000)
        results = await self._call(
            self._store.pipeline([
                self._prune_op(key, policy, now_ms),
                StoreOp.zcard(key),
                StoreOp.zrange(key, 0, 0, with_scores=True),
            ])
        )
        used = int(results[1] or 0)
        return RateLimitResult(
            limit=policy.max_units,
            used=used,
            reset_time=self._sliding_reset(_oldest_score(results[2]), policy, now),
            blocked=_is_blocked(used + 1, policy.max_units),
        )

    async def _increment_sliding(
        self, identity: str, policy: RateLimitPolicy, cost: int, now: float
    ) -> RateLimitResult:
        if cost == 0:
            result = await self._check_sliding(identity, policy, now)
            return RateLimitResult(
                limit=result.limit,
                used=result.used,
                reset_time=result.reset_time,
                blocked=_is_blocked(result.used, policy.max_units),
            )

        key = policy.key_for(identity)
        now_ms = int(now * 1000)
        members = {f"{now_ms}:{uuid.uuid4().hex}": now_ms for _ in range(cost)}
        ops: List[StoreOp] = [
            self._prune_op(key, policy, now_ms),
            StoreOp.zcard(key),
            StoreOp.zadd(key, members),
            StoreOp.expire(key, math.ceil(policy.window_seconds)),
            StoreOp.zrange(key, 0, 0, with_scores=True),
        ]

        results = await self._call(self._store.pipeline(ops))
        used = int(results[1] or 0) + cost
        blocked = _is_blocked(used, policy.max_units)
        if blocked:
            logger.info(
                f"Request limit exceeded: {used}/{policy.max_units}",
                extra=get_log_context(identity=identity, policy=policy.key_prefix, outcome="enforced"),
            )
        return RateLimitResult(
            limit=policy.max_units,
            used=used,
            reset_time=self._sliding_reset(_oldest_score(results[-1]), policy, now),
            blocked=blocked,
        )
