"""Rate limiting data models.

This module contains the policy, window state and result types shared by
both metering modes.
"""

import enum
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from chatquota.app.exceptions import PolicyConfigurationError


class MeterKind(str, enum.Enum):
    """What a policy meters."""

    COUNT = "count"            # discrete requests, sliding window
    TOKEN_COST = "token_cost"  # accumulated token cost, fixed window


class Tier(str, enum.Enum):
    """Caller classification used to select a policy."""

    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    PRO = "pro"


class Outcome(str, enum.Enum):
    """Whether a decision was backed by the window store."""

    ENFORCED = "enforced"
    DEGRADED = "degraded"  # store failed, request allowed without enforcement


@dataclass(frozen=True)
class RateLimitPolicy:
    """Immutable quota definition for one tier or meter.

    Attributes:
        max_units: Quota ceiling (requests or tokens depending on meter)
        window_seconds: Length of the accounting window
        key_prefix: Namespace for store keys, unique per policy
        meter: What is being counted
    """
    max_units: int
    window_seconds: float
    key_prefix: str
    meter: MeterKind = MeterKind.TOKEN_COST

    def __post_init__(self) -> None:
        if isinstance(self.max_units, bool) or not isinstance(self.max_units, int):
            raise PolicyConfigurationError(
                f"max_units must be an integer, got {self.max_units!r}"
            )
        if self.max_units <= 0:
            raise PolicyConfigurationError(
                f"max_units must be positive, got {self.max_units}"
            )
        if not self.window_seconds or self.window_seconds <= 0:
            raise PolicyConfigurationError(
                f"window_seconds must be positive, got {self.window_seconds}"
            )
        if not self.key_prefix:
            raise PolicyConfigurationError("key_prefix must not be empty")

    @property
    def window_ms(self) -> int:
        return int(self.window_seconds * 1000)

    def key_for(self, identity: str) -> str:
        """Store key holding this policy's counter for an identity."""
        return f"{self.key_prefix}{identity}"


@dataclass
class WindowState:
    """Persisted accounting state for one identity under one policy."""
    used: int = 0
    window_start: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check or increment.

    ``remaining`` is derived from ``limit`` and ``used`` so it can never
    disagree with them.
    """
    limit: int
    used: int
    reset_time: float
    blocked: bool
    outcome: Outcome = Outcome.ENFORCED

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def degraded(self) -> bool:
        return self.outcome is Outcome.DEGRADED

    @property
    def reset_epoch(self) -> int:
        """Reset time as whole Unix seconds, rounded up."""
        return math.ceil(self.reset_time)

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_time, tz=timezone.utc)

    @property
    def usage_percentage(self) -> int:
        if self.limit <= 0:
            return 0
        return round(self.used / self.limit * 100)

    def retry_after(self, now: Optional[float] = None) -> int:
        """Seconds until the window resets, zero floored."""
        if now is None:
            now = time.time()
        return max(0, math.ceil(self.reset_time - now))

    def to_headers(self, now: Optional[float] = None) -> Dict[str, str]:
        """HTTP headers describing this result."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_epoch),
        }
        if self.blocked:
            headers["Retry-After"] = str(self.retry_after(now))
        return headers

    @classmethod
    def fail_open(cls, policy: RateLimitPolicy, now: float) -> "RateLimitResult":
        """Result returned when the window store cannot be consulted."""
        return cls(
            limit=policy.max_units,
            used=0,
            reset_time=now + policy.window_seconds,
            blocked=False,
            outcome=Outcome.DEGRADED,
        )


def format_time_until_reset(reset_time: float, now: Optional[float] = None) -> str:
    """Human readable countdown such as ``"2h 5m"``, ``"12m"`` or ``"now"``."""
    if now is None:
        now = time.time()
    diff = reset_time - now
    if diff <= 0:
        return "now"

    hours = int(diff // 3600)
    minutes = int((diff % 3600) // 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
