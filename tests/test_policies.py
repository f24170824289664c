"""Tests for tier policies."""

import pytest

from chatquota.app.core.config import Settings
from chatquota.app.exceptions import PolicyConfigurationError
from chatquota.app.services.rate_limit import (
    MeterKind,
    PolicyBook,
    RateLimitPolicy,
    Tier,
    load_policies,
    tier_for,
)


class TestLoadPolicies:
    """Tests for building policies from settings."""

    def test_defaults(self):
        policies = load_policies(Settings())

        anonymous = policies.for_tier(Tier.ANONYMOUS)
        assert anonymous.max_units == 25000
        assert anonymous.window_seconds == 14400
        assert anonymous.meter is MeterKind.TOKEN_COST
        assert anonymous.key_prefix == "token_limit:anonymous:"

        assert policies.for_tier(Tier.AUTHENTICATED).max_units == 100000
        assert policies.for_tier(Tier.AUTHENTICATED).key_prefix == "token_limit:user:"
        assert policies.for_tier(Tier.PRO).max_units == 500000

        assert policies.requests.max_units == 20
        assert policies.requests.window_seconds == 7200
        assert policies.requests.meter is MeterKind.COUNT

    def test_overrides(self):
        policies = load_policies(Settings(
            rate_limit_anonymous_tokens=10,
            rate_limit_window_seconds=60,
            rate_limit_anonymous_requests=2,
        ))
        assert policies.for_tier(Tier.ANONYMOUS).max_units == 10
        assert policies.for_tier(Tier.PRO).window_seconds == 60
        assert policies.requests.max_units == 2

    def test_all_prefixes_distinct(self):
        policies = load_policies(Settings())
        prefixes = {p.key_prefix for p in policies.tokens.values()}
        prefixes.add(policies.requests.key_prefix)
        assert len(prefixes) == 4

    def test_tokens_mapping_is_read_only(self):
        policies = load_policies(Settings())
        with pytest.raises(TypeError):
            policies.tokens[Tier.PRO] = policies.requests


class TestPolicyBook:
    """Tests for PolicyBook validation."""

    def _policy(self, prefix, meter=MeterKind.TOKEN_COST):
        return RateLimitPolicy(max_units=10, window_seconds=60, key_prefix=prefix, meter=meter)

    def test_missing_tier_rejected(self):
        with pytest.raises(PolicyConfigurationError):
            PolicyBook(
                tokens={Tier.ANONYMOUS: self._policy("a:")},
                requests=self._policy("r:", MeterKind.COUNT),
            )

    def test_duplicate_prefix_rejected(self):
        with pytest.raises(PolicyConfigurationError):
            PolicyBook(
                tokens={
                    Tier.ANONYMOUS: self._policy("a:"),
                    Tier.AUTHENTICATED: self._policy("a:"),
                    Tier.PRO: self._policy("p:"),
                },
                requests=self._policy("r:", MeterKind.COUNT),
            )


class TestTierFor:
    """Tests for tier selection."""

    def test_anonymous_ignores_tier_name(self):
        assert tier_for(False, "pro") is Tier.ANONYMOUS

    def test_authenticated_default(self):
        assert tier_for(True) is Tier.AUTHENTICATED

    def test_pro(self):
        assert tier_for(True, " Pro ") is Tier.PRO

    def test_unknown_tier_name(self):
        assert tier_for(True, "platinum") is Tier.AUTHENTICATED
