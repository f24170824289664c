"""Token budget and request count rate limiting.

This package provides the window counter stores, the rate limiter for both
meters, tier based policy selection, identity resolution and usage
accounting.
"""

from .accounting import UsageAccountant
from .identity import CallerContext, get_client_ip, resolve_identity
from .limiter import RateLimiter, normalize_cost
from .models import (
    MeterKind,
    Outcome,
    RateLimitPolicy,
    RateLimitResult,
    Tier,
    WindowState,
    format_time_until_reset,
)
from .policies import PolicyBook, load_policies, tier_for
from .store import (
    InMemoryWindowStore,
    RedisWindowStore,
    StoreOp,
    WindowCounterStore,
    build_window_store,
    init_window_store,
)

__all__ = [
    # Models
    "MeterKind",
    "Outcome",
    "RateLimitPolicy",
    "RateLimitResult",
    "Tier",
    "WindowState",
    "format_time_until_reset",
    # Stores
    "WindowCounterStore",
    "RedisWindowStore",
    "InMemoryWindowStore",
    "StoreOp",
    "build_window_store",
    "init_window_store",
    # Limiter and policies
    "RateLimiter",
    "normalize_cost",
    "PolicyBook",
    "load_policies",
    "tier_for",
    # Collaborators
    "CallerContext",
    "get_client_ip",
    "resolve_identity",
    "UsageAccountant",
]
