"""Policy selection by caller tier.

Policies are built once from settings at startup and never mutated.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional

from chatquota.app.core.config import Settings
from chatquota.app.exceptions import PolicyConfigurationError
from chatquota.app.services.rate_limit.models import MeterKind, RateLimitPolicy, Tier

ANONYMOUS_TOKEN_PREFIX = "token_limit:anonymous:"
AUTHENTICATED_TOKEN_PREFIX = "token_limit:user:"
PRO_TOKEN_PREFIX = "token_limit:pro:"
REQUEST_PREFIX = "rate_limit:requests:"


@dataclass(frozen=True)
class PolicyBook:
    """Fixed set of policies loaded from configuration.

    Attributes:
        tokens: Token budget policy per tier
        requests: Request count policy applied to anonymous generations
    """
    tokens: Mapping[Tier, RateLimitPolicy]
    requests: RateLimitPolicy

    def __post_init__(self) -> None:
        missing = [tier.value for tier in Tier if tier not in self.tokens]
        if missing:
            raise PolicyConfigurationError(f"No token policy configured for tiers: {missing}")
        prefixes = [policy.key_prefix for policy in self.tokens.values()]
        prefixes.append(self.requests.key_prefix)
        if len(set(prefixes)) != len(prefixes):
            raise PolicyConfigurationError("Rate limit policies must use distinct key prefixes")
        object.__setattr__(self, "tokens", MappingProxyType(dict(self.tokens)))

    def for_tier(self, tier: Tier) -> RateLimitPolicy:
        """Token policy for a caller tier."""
        return self.tokens[tier]


def tier_for(authenticated: bool, tier_name: Optional[str] = None) -> Tier:
    """Map session state to a tier.

    Unknown tier names fall back to the authenticated tier for signed-in
    callers and to anonymous otherwise.
    """
    if not authenticated:
        return Tier.ANONYMOUS
    if tier_name:
        try:
            return Tier(tier_name.strip().lower())
        except ValueError:
            pass
    return Tier.AUTHENTICATED


def load_policies(settings: Settings) -> PolicyBook:
    """Build the policy book from settings.

    Raises:
        PolicyConfigurationError: If any configured limit or window is invalid
    """
    window = settings.rate_limit_window_seconds
    return PolicyBook(
        tokens={
            Tier.ANONYMOUS: RateLimitPolicy(
                max_units=settings.rate_limit_anonymous_tokens,
                window_seconds=window,
                key_prefix=ANONYMOUS_TOKEN_PREFIX,
                meter=MeterKind.TOKEN_COST,
            ),
            Tier.AUTHENTICATED: RateLimitPolicy(
                max_units=settings.rate_limit_authenticated_tokens,
                window_seconds=window,
                key_prefix=AUTHENTICATED_TOKEN_PREFIX,
                meter=MeterKind.TOKEN_COST,
            ),
            Tier.PRO: RateLimitPolicy(
                max_units=settings.rate_limit_pro_tokens,
                window_seconds=window,
                key_prefix=PRO_TOKEN_PREFIX,
                meter=MeterKind.TOKEN_COST,
            ),
        },
        requests=RateLimitPolicy(
            max_units=settings.rate_limit_anonymous_requests,
            window_seconds=settings.rate_limit_request_window_seconds,
            key_prefix=REQUEST_PREFIX,
            meter=MeterKind.COUNT,
        ),
    )
