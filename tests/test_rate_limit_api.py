"""Tests for the HTTP surface: middleware, endpoints and quota dependency."""

import time
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import Depends, HTTPException, Request
from fastapi.testclient import TestClient
from starlette.middleware.base import BaseHTTPMiddleware

from chatquota.app.api.deps import enforce_token_quota, get_rate_limiter
from chatquota.app.api.rate_limit import build_status
from chatquota.app.core.config import Settings
from chatquota.app.exceptions import StoreError
from chatquota.app.main import create_app
from chatquota.app.middleware.rate_limit import describe_window
from chatquota.app.services.rate_limit import (
    InMemoryWindowStore,
    MeterKind,
    RateLimiter,
    RateLimitPolicy,
    RateLimitResult,
)

IP_HEADER = "X-Original-Chat-Forwarded-For"


class FakeAuthMiddleware(BaseHTTPMiddleware):
    """Marks requests carrying X-Test-User as authenticated."""

    async def dispatch(self, request: Request, call_next):
        user = request.headers.get("X-Test-User")
        if user:
            request.state.user_id = user
            request.state.user_tier = request.headers.get("X-Test-Tier")
        return await call_next(request)


def build_app(store: Optional[InMemoryWindowStore] = None, clock=time.time, **overrides):
    values = {
        "rate_limit_anonymous_tokens": 100,
        "rate_limit_anonymous_requests": 3,
        "access_token": "",
    }
    values.update(overrides)
    app_settings = Settings(**values)
    store = store or InMemoryWindowStore(clock=clock)
    app = create_app(app_settings=app_settings, store=store, clock=clock)

    @app.post("/api/chat")
    async def chat(quota: Optional[RateLimitResult] = Depends(enforce_token_quota)):
        return {"ok": True, "remaining": quota.remaining if quota else None}

    @app.post("/api/chat/upstream-error")
    async def upstream_error():
        raise HTTPException(status_code=502, detail="Upstream provider failed")

    @app.post("/api/chat/crash")
    async def crash():
        raise RuntimeError("handler crashed")

    @app.post("/api/chat-debit")
    async def debit(limiter: RateLimiter = Depends(get_rate_limiter)):
        policy = RateLimitPolicy(max_units=10, window_seconds=60, key_prefix="debit:")
        await limiter.increment("x", policy, -1)
        return {"ok": True}

    app.add_middleware(FakeAuthMiddleware)
    return app


@pytest.fixture
def client():
    with TestClient(build_app()) as test_client:
        yield test_client


class TestRequestLimitMiddleware:
    """Tests for the anonymous request limit."""

    def test_anonymous_requests_limited(self, client):
        headers = {IP_HEADER: "1.2.3.4:9999, 5.6.7.8"}
        for i in range(3):
            response = client.post("/api/chat", headers=headers)
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Limit"] == "3"
            assert response.headers["X-RateLimit-Remaining"] == str(2 - i)

        response = client.post("/api/chat", headers=headers)
        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "rate_limit_exceeded"
        assert body["limit"] == 3
        assert body["used"] == 3
        assert body["remaining"] == 0
        assert body["authenticated"] is False
        assert "3 messages per 2 hours" in body["message"]
        assert "sign in" in body["message"]
        assert int(response.headers["Retry-After"]) > 0

    def test_rejected_retries_do_not_extend_the_window(self, clock):
        headers = {IP_HEADER: "3.3.3.3"}
        with TestClient(build_app(clock=clock)) as client:
            for _ in range(3):
                assert client.post("/api/chat", headers=headers).status_code == 200

            clock.advance(3600)
            for _ in range(3):
                response = client.post("/api/chat", headers=headers)
                assert response.status_code == 429
                assert response.json()["used"] == 3

            # The served requests have aged out; the rejected ones never counted
            clock.advance(3601)
            response = client.post("/api/chat", headers=headers)
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Remaining"] == "2"

    def test_failed_requests_are_not_charged(self):
        headers = {IP_HEADER: "6.6.6.6"}
        app = build_app()
        with TestClient(app, raise_server_exceptions=False) as client:
            for _ in range(3):
                response = client.post("/api/chat/upstream-error", headers=headers)
                assert response.status_code == 502
                assert "X-RateLimit-Limit" not in response.headers
            assert client.post("/api/chat/crash", headers=headers).status_code == 500

            for _ in range(3):
                assert client.post("/api/chat", headers=headers).status_code == 200
            assert client.post("/api/chat", headers=headers).status_code == 429

    def test_limit_is_per_ip(self, client):
        for _ in range(3):
            client.post("/api/chat", headers={IP_HEADER: "1.1.1.1"})
        assert client.post("/api/chat", headers={IP_HEADER: "1.1.1.1"}).status_code == 429
        assert client.post("/api/chat", headers={IP_HEADER: "2.2.2.2"}).status_code == 200

    def test_authenticated_callers_bypass(self, client):
        headers = {IP_HEADER: "1.2.3.4", "X-Test-User": "user-1"}
        for _ in range(5):
            response = client.post("/api/chat", headers=headers)
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

    def test_other_paths_not_limited(self, client):
        for _ in range(5):
            assert client.get("/health").status_code == 200

    def test_disabled_by_access_token(self):
        with TestClient(build_app(access_token="secret")) as client:
            for _ in range(5):
                response = client.post("/api/chat")
                assert response.status_code == 200
                assert response.json()["remaining"] is None
                assert "X-RateLimit-Limit" not in response.headers

    def test_store_outage_fails_open(self):
        store = InMemoryWindowStore()
        store.pipeline = AsyncMock(side_effect=StoreError("down"))
        with TestClient(build_app(store=store)) as client:
            for _ in range(5):
                assert client.post("/api/chat").status_code == 200

    def test_describe_window(self):
        hours = RateLimitPolicy(max_units=1, window_seconds=7200, key_prefix="a:", meter=MeterKind.COUNT)
        hour = RateLimitPolicy(max_units=1, window_seconds=3600, key_prefix="a:", meter=MeterKind.COUNT)
        minutes = RateLimitPolicy(max_units=1, window_seconds=600, key_prefix="a:", meter=MeterKind.COUNT)
        assert describe_window(hours) == "messages per 2 hours"
        assert describe_window(hour) == "messages per 1 hour"
        assert describe_window(minutes) == "messages per 10 minutes"


class TestTokenQuotaDependency:
    """Tests for the pre-flight token budget check."""

    def test_blocks_when_budget_spent(self, client):
        headers = {IP_HEADER: "9.9.9.9"}
        response = client.post("/api/rate-limit/usage", json={"promptTokens": 100}, headers=headers)
        assert response.status_code == 200

        response = client.post("/api/chat", headers=headers)
        assert response.status_code == 429
        body = response.json()
        assert body["limit"] == 100
        assert body["used"] == 100
        assert "100 tokens" in body["message"]
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_authenticated_message(self, client):
        headers = {IP_HEADER: "9.9.9.9", "X-Test-User": "user-7"}
        client.post("/api/rate-limit/usage", json={"promptTokens": 100000}, headers=headers)

        response = client.post("/api/chat", headers=headers)
        assert response.status_code == 429
        body = response.json()
        assert body["authenticated"] is True
        assert "after your quota resets" in body["message"]

    def test_allows_within_budget(self, client):
        response = client.post("/api/chat", headers={IP_HEADER: "8.8.8.8"})
        assert response.status_code == 200
        assert response.json()["remaining"] == 100

    def test_invalid_cost_returns_400(self, client):
        response = client.post("/api/chat-debit")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_cost"


class TestUsageEndpoint:
    """Tests for POST /api/rate-limit/usage."""

    def test_records_usage(self, client):
        headers = {IP_HEADER: "4.4.4.4"}
        response = client.post(
            "/api/rate-limit/usage",
            json={"promptTokens": 30, "completionTokens": 20},
            headers=headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["limit"] == 100
        assert body["used"] == 50
        assert body["remaining"] == 50
        assert body["blocked"] is False
        assert response.headers["X-RateLimit-Remaining"] == "50"
        assert "Retry-After" not in response.headers

    def test_over_budget_is_reported_not_rejected(self, client):
        response = client.post("/api/rate-limit/usage", json={"promptTokens": 150})
        assert response.status_code == 200
        assert response.json()["blocked"] is True

    def test_negative_tokens_rejected(self, client):
        response = client.post("/api/rate-limit/usage", json={"promptTokens": -1})
        assert response.status_code == 422

    def test_model_multiplier(self):
        app = build_app(model_token_multipliers='{"big-model": 2}')
        with TestClient(app) as client:
            response = client.post(
                "/api/rate-limit/usage",
                json={"promptTokens": 10, "model": "big-model"},
            )
            assert response.json()["used"] == 20


class TestStatusEndpoint:
    """Tests for GET /api/rate-limit/status."""

    def test_fresh_anonymous_caller(self, client):
        response = client.get("/api/rate-limit/status")
        assert response.status_code == 200
        body = response.json()
        assert body["usagePercentage"] == 0
        assert body["remainingPercentage"] == 100
        assert body["blocked"] is False
        assert body["authenticated"] is False
        assert body["resetIn"] in {"3h 59m", "4h 0m"}
        assert body["showConversationWarning"] is False

    def test_usage_and_conversation_warning(self, client):
        headers = {IP_HEADER: "5.5.5.5"}
        client.post(
            "/api/rate-limit/usage",
            json={"promptTokens": 20, "conversationTokens": 40},
            headers=headers,
        )
        body = client.get("/api/rate-limit/status", headers=headers).json()
        assert body["usagePercentage"] == 20
        assert body["remainingPercentage"] == 80
        assert body["conversationTokenPercentage"] == 50
        assert body["showConversationWarning"] is True

    def test_authenticated_caller(self, client):
        body = client.get("/api/rate-limit/status", headers={"X-Test-User": "u1"}).json()
        assert body["authenticated"] is True

    def test_disabled_returns_neutral_status(self):
        with TestClient(build_app(access_token="secret")) as client:
            body = client.get("/api/rate-limit/status").json()
            assert body["usagePercentage"] == 0
            assert body["authenticated"] is True

    def test_error_returns_neutral_status(self, client):
        accountant = MagicMock()
        accountant.get_conversation_tokens = AsyncMock(side_effect=RuntimeError("boom"))
        client.app.state.usage_accountant = accountant

        response = client.get("/api/rate-limit/status", headers={"X-Test-User": "u1"})
        assert response.status_code == 200
        body = response.json()
        assert body["usagePercentage"] == 0
        assert body["authenticated"] is False

    def test_build_status_exhausted_budget(self):
        now = 1_700_000_000.0
        result = RateLimitResult(limit=100, used=120, reset_time=now + 90 * 60, blocked=True)
        status = build_status(result, authenticated=True, conversation_tokens=10,
                              warning_percentage=30, now=now)
        assert status.usage_percentage == 120
        assert status.remaining_percentage == 0
        assert status.conversation_token_percentage == 100
        assert status.show_conversation_warning is True
        assert status.reset_in == "1h 30m"


class TestHealthAndRequestId:
    """Tests for the health endpoint and request ids."""

    def test_health_ok(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["components"]["store"]["type"] == "InMemoryWindowStore"

    def test_health_degraded_on_store_error(self):
        store = InMemoryWindowStore()
        store.ping = AsyncMock(side_effect=StoreError("Redis ping failed"))
        with TestClient(build_app(store=store)) as client:
            body = client.get("/health").json()
            assert body["status"] == "degraded"
            assert body["components"]["store"]["status"] == "error"

    def test_request_id_generated(self, client):
        response = client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 36

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"

    def test_overlong_request_id_replaced(self, client):
        response = client.get("/health", headers={"X-Request-ID": "x" * 200})
        assert response.headers["X-Request-ID"] != "x" * 200
