"""Shared fixtures for rate limit tests."""

import pytest

from chatquota.app.services.rate_limit import (
    InMemoryWindowStore,
    MeterKind,
    RateLimiter,
    RateLimitPolicy,
)

START_TIME = 1_700_000_000.0


class FakeClock:
    """Controllable time source in epoch seconds."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return InMemoryWindowStore(clock=clock)


@pytest.fixture
def limiter(memory_store, clock):
    return RateLimiter(memory_store, clock=clock, timeout=1.0)


@pytest.fixture
def token_policy():
    return RateLimitPolicy(
        max_units=100,
        window_seconds=3600,
        key_prefix="token_limit:test:",
        meter=MeterKind.TOKEN_COST,
    )


@pytest.fixture
def request_policy():
    return RateLimitPolicy(
        max_units=3,
        window_seconds=7200,
        key_prefix="rate_limit:test:",
        meter=MeterKind.COUNT,
    )
