"""Tests for API middleware (request ID, signing throttle, CORS)."""

from __future__ import annotations

import time
from unittest.mock import patch

import pytest
import structlog
from fastapi import FastAPI
from fastapi.testclient import TestClient

from sodot_signer.api.middleware import (
    RequestIdMiddleware,
    SigningRateLimitMiddleware,
    SlidingWindowLimiter,
    get_cors_origins,
)

CLOCK = "sodot_signer.api.middleware.time.monotonic"


class TestSlidingWindowLimiter:
    def test_admits_up_to_limit(self) -> None:
        limiter = SlidingWindowLimiter(limit=2, window=60.0)
        assert limiter.acquire("session:a") == 0.0
        assert limiter.acquire("session:a") == 0.0
        assert 0 < limiter.acquire("session:a") <= 60.0

    def test_keys_are_independent(self) -> None:
        limiter = SlidingWindowLimiter(limit=1, window=60.0)
        assert limiter.acquire("session:a") == 0.0
        assert limiter.acquire("session:a") > 0
        assert limiter.acquire("session:b") == 0.0

    def test_slot_frees_after_window(self) -> None:
        limiter = SlidingWindowLimiter(limit=1, window=10.0)
        now = time.monotonic()
        with patch(CLOCK, return_value=now):
            limiter.acquire("session:a")
        with patch(CLOCK, return_value=now + 4):
            assert limiter.acquire("session:a") == pytest.approx(6.0)
        with patch(CLOCK, return_value=now + 10.5):
            assert limiter.acquire("session:a") == 0.0

    def test_forgets_least_recent_key(self) -> None:
        limiter = SlidingWindowLimiter(limit=1, window=60.0, max_keys=2)
        limiter.acquire("a")
        limiter.acquire("b")
        limiter.acquire("a")
        limiter.acquire("c")
        assert len(limiter) == 2
        # "b" was forgotten, so it starts with a fresh budget
        assert limiter.acquire("b") == 0.0


def _app(limit: int = 100) -> FastAPI:
    app = FastAPI()

    @app.get("/echo")
    async def echo() -> dict:
        return {"request_id": structlog.contextvars.get_contextvars().get("request_id")}

    @app.get("/v1/sessions/{session_id}")
    async def get_session(session_id: str) -> dict:
        return {"session_id": session_id}

    @app.post("/v1/sessions")
    async def create_session() -> dict:
        return {"session_id": "new"}

    @app.post("/v1/sessions/{session_id}/sign")
    async def sign(session_id: str) -> dict:
        return {"session_id": session_id}

    app.add_middleware(SigningRateLimitMiddleware, limiter=SlidingWindowLimiter(limit, 60.0))
    app.add_middleware(RequestIdMiddleware)
    return app


class TestRequestIdMiddleware:
    def test_generated_id(self) -> None:
        resp = TestClient(_app()).get("/echo")
        assert len(resp.headers["x-request-id"]) == 32

    def test_forwarded_id_bound_to_context(self) -> None:
        resp = TestClient(_app()).get("/echo", headers={"X-Request-ID": "trace-7"})
        assert resp.headers["x-request-id"] == "trace-7"
        assert resp.json() == {"request_id": "trace-7"}

    def test_security_headers(self) -> None:
        resp = TestClient(_app()).get("/echo")
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["cache-control"] == "no-store"


class TestSigningRateLimitMiddleware:
    def test_signing_limited_per_session(self) -> None:
        client = TestClient(_app(limit=2))
        codes = [client.post("/v1/sessions/s1/sign").status_code for _ in range(3)]
        assert codes == [200, 200, 429]
        assert client.post("/v1/sessions/s2/sign").status_code == 200

    def test_rejection_carries_retry_after(self) -> None:
        client = TestClient(_app(limit=1))
        client.post("/v1/sessions/s1/sign")
        resp = client.post("/v1/sessions/s1/sign")
        assert resp.status_code == 429
        assert 1 <= int(resp.headers["retry-after"]) <= 60

    def test_session_creation_limited_per_client(self) -> None:
        client = TestClient(_app(limit=1))
        assert [client.post("/v1/sessions").status_code for _ in range(2)] == [200, 429]

    def test_reads_not_limited(self) -> None:
        client = TestClient(_app(limit=1))
        assert all(client.get("/v1/sessions/s1").status_code == 200 for _ in range(5))
        assert all(client.get("/echo").status_code == 200 for _ in range(5))


class TestCorsOrigins:
    def test_empty_is_wildcard(self) -> None:
        assert get_cors_origins("") == ["*"]

    def test_parses_list(self) -> None:
        assert get_cors_origins("https://a.io, https://b.io,") == ["https://a.io", "https://b.io"]
