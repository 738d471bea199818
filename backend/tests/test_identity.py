"""
Tests for identity resolution and the /api/auth endpoints.

Tests cover:
- Token -> Principal resolution (valid, missing, expired, tampered, wrong type)
- Registration (201, duplicate email/username -> 409, short password -> 400)
- Login (valid, wrong password -> 401)
- /api/auth/me echoes the resolved principal
"""

import logging
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt

import models
from auth.identity import Principal, resolve_principal
from auth.security import ALGORITHM, SECRET_KEY, create_access_token
from errors import Unauthenticated
from tests.conftest import create_auth_token

logger = logging.getLogger(__name__)


# ============== Principal Resolution ==============


def test_resolve_valid_token(alice: models.User):
    principal = resolve_principal(create_auth_token(alice))

    assert principal == Principal(id=alice.id, email=alice.email)
    logger.info("✓ Valid token resolves to (id, email)")


@pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
def test_resolve_missing_or_malformed_token(token):
    with pytest.raises(Unauthenticated):
        resolve_principal(token)


def test_resolve_expired_token(alice: models.User):
    token = create_auth_token(alice, expires_delta=timedelta(minutes=-5))

    with pytest.raises(Unauthenticated):
        resolve_principal(token)
    logger.info("✓ Expired token rejected")


def test_resolve_token_with_bad_signature(alice: models.User):
    token = jwt.encode(
        {"sub": str(alice.id), "email": alice.email, "type": "access"},
        "some-other-secret",
        algorithm=ALGORITHM,
    )

    with pytest.raises(Unauthenticated):
        resolve_principal(token)


def test_resolve_token_missing_email_claim(alice: models.User):
    token = create_access_token({"sub": str(alice.id)})

    with pytest.raises(Unauthenticated):
        resolve_principal(token)


def test_resolve_token_with_non_integer_subject():
    token = create_access_token({"sub": "abc", "email": "x@example.com"})

    with pytest.raises(Unauthenticated):
        resolve_principal(token)


def test_resolve_rejects_non_access_token(alice: models.User):
    token = jwt.encode(
        {"sub": str(alice.id), "email": alice.email, "type": "refresh"},
        SECRET_KEY,
        algorithm=ALGORITHM,
    )

    with pytest.raises(Unauthenticated):
        resolve_principal(token)
    logger.info("✓ Only access tokens resolve to a principal")


# ============== Auth Endpoints ==============


def test_protected_endpoint_without_token(client: TestClient):
    response = client.get("/api/teams")

    assert response.status_code == 401, f"Expected 401, got {response.status_code}: {response.json()}"
    assert "error" in response.json()


def test_register_returns_user_and_token(client: TestClient):
    response = client.post(
        "/api/auth/register",
        json={"username": "dave", "email": "dave@example.com", "password": "hunter22"},
    )

    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["success"] is True
    assert data["user"]["username"] == "dave"
    assert "password_hash" not in data["user"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
    assert me.status_code == 200
    assert me.json() == {"id": data["user"]["id"], "email": "dave@example.com"}
    logger.info("✓ Registration issues a usable token")


def test_register_duplicate_email_conflicts(client: TestClient, alice: models.User):
    response = client.post(
        "/api/auth/register",
        json={"username": "someone-else", "email": alice.email, "password": "hunter22"},
    )

    assert response.status_code == 409, f"Expected 409, got {response.status_code}: {response.json()}"


def test_register_duplicate_username_conflicts(client: TestClient, alice: models.User):
    response = client.post(
        "/api/auth/register",
        json={"username": "alice", "email": "another@example.com", "password": "hunter22"},
    )

    assert response.status_code == 409


def test_register_short_password_is_invalid_input(client: TestClient):
    response = client.post(
        "/api/auth/register",
        json={"username": "eve", "email": "eve@example.com", "password": "123"},
    )

    assert response.status_code == 400, f"Expected 400, got {response.status_code}: {response.json()}"
    body = response.json()
    assert body["error"]
    assert body["details"][0]["loc"][-1] == "password"


def test_login(client: TestClient, alice: models.User):
    response = client.post("/api/auth/login", json={"email": alice.email, "password": "secret123"})

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert resolve_principal(response.json()["token"]).id == alice.id


def test_login_wrong_password(client: TestClient, alice: models.User):
    response = client.post("/api/auth/login", json={"email": alice.email, "password": "wrong-password"})

    assert response.status_code == 401
    assert response.json()["error"] == "Invalid email or password"


def test_login_unknown_email(client: TestClient):
    response = client.post("/api/auth/login", json={"email": "nobody@example.com", "password": "whatever"})

    assert response.status_code == 401
    assert response.json()["error"] == "Invalid email or password"
