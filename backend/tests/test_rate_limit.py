"""
Tests for authentication rate limiting.

Tests cover:
- Login and register are throttled to 10 requests per client per window
- Throttled responses are 429 with Retry-After
- Other endpoints are never throttled
- The window slides: old requests stop counting
"""

import logging

from fastapi.testclient import TestClient

import models
from rate_limit import SlidingWindowLimiter, auth_limiter

logger = logging.getLogger(__name__)


def test_login_throttled_after_limit(client: TestClient, alice: models.User):
    credentials = {"email": "alice@example.com", "password": "wrong-password"}

    for attempt in range(auth_limiter.max_requests):
        response = client.post("/api/auth/login", json=credentials)
        assert response.status_code == 401, f"Attempt {attempt + 1} should reach the handler"

    throttled = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret123"})

    assert throttled.status_code == 429, f"Expected 429, got {throttled.status_code}"
    assert "error" in throttled.json()
    assert int(throttled.headers["Retry-After"]) > 0
    logger.info("✓ Login throttled after repeated attempts")


def test_register_throttled_independently_of_login(client: TestClient):
    for _ in range(auth_limiter.max_requests):
        client.post("/api/auth/login", json={"email": "nobody@example.com", "password": "whatever"})

    response = client.post(
        "/api/auth/register",
        json={"username": "dave", "email": "dave@example.com", "password": "secret123"},
    )
    assert response.status_code == 201

    for index in range(auth_limiter.max_requests - 1):
        client.post(
            "/api/auth/register",
            json={"username": f"user{index}", "email": f"user{index}@example.com", "password": "secret123"},
        )

    throttled = client.post(
        "/api/auth/register",
        json={"username": "late", "email": "late@example.com", "password": "secret123"},
    )
    assert throttled.status_code == 429


def test_other_endpoints_not_throttled(client: TestClient, alice_headers: dict):
    for _ in range(auth_limiter.max_requests + 5):
        assert client.get("/api/auth/me", headers=alice_headers).status_code == 200
        assert client.get("/health").status_code == 200


def test_window_slides():
    now = [1000.0]
    limiter = SlidingWindowLimiter(max_requests=2, window_seconds=60, clock=lambda: now[0])
    key = ("10.0.0.1", "/api/auth/login")

    assert limiter.hit(key) is None
    now[0] += 10
    assert limiter.hit(key) is None
    now[0] += 10
    assert limiter.hit(key) == 40, "Retry-After should count down to the oldest hit leaving the window"

    # A different client is unaffected
    assert limiter.hit(("10.0.0.2", "/api/auth/login")) is None

    now[0] = 1060.0
    assert limiter.hit(key) is None, "Oldest request has left the window"
    assert limiter.hit(key) == 10
