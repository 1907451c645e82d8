"""
Authentication Tests
====================

Password policy, JWT handling and the /auth endpoints.
"""

from datetime import timedelta

import pytest

from flowassist.auth import (
    create_access_token,
    create_download_token,
    create_refresh_token,
    decode_token,
    get_password_hash,
    is_password_too_long,
    password_policy_error,
    validate_password,
    verify_password,
)

STRONG_PASSWORD = "Secret#2026"


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = get_password_hash(STRONG_PASSWORD)
        assert verify_password(STRONG_PASSWORD, hashed)
        assert not verify_password("wrong", hashed)

    def test_bcrypt_limit(self):
        assert is_password_too_long("é" * 40)
        with pytest.raises(ValueError):
            get_password_hash("x" * 73)

    def test_policy(self):
        valid, rules = validate_password("short")
        assert not valid
        failed = {r["key"] for r in rules if not r["passed"]}
        assert failed == {"min_length", "uppercase", "digit", "special"}

        assert password_policy_error(STRONG_PASSWORD) is None
        assert "uppercase" in password_policy_error("secret#2026")


class TestTokens:
    def test_token_types_are_enforced(self):
        access = create_access_token({"sub": "u1"})
        refresh = create_refresh_token({"sub": "u1"})

        assert decode_token(access, expected_type="access")["sub"] == "u1"
        assert decode_token(access, expected_type="refresh") is None
        assert decode_token(refresh, expected_type="refresh")["jti"]

    def test_expired_token(self):
        token = create_access_token({"sub": "u1"}, expires_delta=timedelta(seconds=-1))
        assert decode_token(token) is None

    def test_download_token(self):
        payload = decode_token(create_download_token("doc1", "t1", 60), expected_type="download")
        assert payload["sub"] == "doc1"
        assert payload["tenant_id"] == "t1"

    def test_garbage(self):
        assert decode_token("not-a-jwt") is None


# =============================================================================
# Endpoints
# =============================================================================

@pytest.fixture
def client(sqlalchemy_db):
    from fastapi.testclient import TestClient
    from flowassist.api import app

    return TestClient(app)


def _register(client, email="new@cabinet.ma"):
    return client.post("/auth/register", json={
        "email": email,
        "password": STRONG_PASSWORD,
        "name": "Nadia",
        "cabinet_name": "Cabinet Nadia",
    })


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_register_creates_owned_cabinet(client):
    resp = _register(client)
    assert resp.status_code == 200
    data = resp.json()
    assert data["access_token"]
    assert data["tenants"] == [{"id": data["tenants"][0]["id"], "slug": "cabinet-nadia",
                                "name": "Cabinet Nadia", "role": "owner"}]

    assert _register(client).status_code == 400


def test_register_rejects_weak_password(client):
    resp = client.post("/auth/register", json={
        "email": "weak@cabinet.ma", "password": "password", "name": "Weak", "cabinet_name": "Weak",
    })
    assert resp.status_code == 400


def test_login_and_me(client):
    _register(client)

    assert client.post("/auth/login", json={"email": "new@cabinet.ma", "password": "Wrong#2026"}).status_code == 401

    resp = client.post("/auth/login", json={"email": "NEW@cabinet.ma", "password": STRONG_PASSWORD})
    assert resp.status_code == 200
    token = resp.json()["access_token"]

    resp = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert resp.json()["email"] == "new@cabinet.ma"
    assert resp.json()["tenants"][0]["role"] == "owner"


def test_refresh_rejects_access_token(client):
    tokens = _register(client).json()

    assert client.post("/auth/refresh", json={"refresh_token": tokens["access_token"]}).status_code == 401
    resp = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 200
    assert resp.json()["access_token"] != tokens["access_token"]


def test_logout_revokes_token(client):
    from flowassist.db.models import TokenBlacklist
    from flowassist.db.session import get_db_session

    token = _register(client).json()["access_token"]
    headers = {"Authorization": f"Bearer {token}"}

    resp = client.post("/auth/logout", headers=headers)
    assert resp.json()["message"] == "Logged out successfully"
    with get_db_session() as db:
        assert db.query(TokenBlacklist).count() == 1

    assert client.get("/auth/me", headers=headers).status_code == 401


def test_password_reset_flow(client):
    _register(client)

    resp = client.post("/auth/forgot-password", json={"email": "unknown@cabinet.ma"})
    assert resp.status_code == 200
    assert "_dev_token" not in resp.json()

    reset_token = client.post("/auth/forgot-password", json={"email": "new@cabinet.ma"}).json()["_dev_token"]

    resp = client.post("/auth/reset-password", json={"token": reset_token, "new_password": "Nouveau#2026"})
    assert resp.status_code == 200
    # single use
    resp = client.post("/auth/reset-password", json={"token": reset_token, "new_password": "Encore#2026"})
    assert resp.status_code == 400

    resp = client.post("/auth/login", json={"email": "new@cabinet.ma", "password": "Nouveau#2026"})
    assert resp.status_code == 200


def test_password_policy_endpoint(client):
    resp = client.post("/auth/password-policy", json={"password": STRONG_PASSWORD})
    assert resp.json()["valid"] is True


# =============================================================================
# Header identification
# =============================================================================

@pytest.mark.parametrize("env", [
    {"ALLOW_HEADER_AUTH": "false", "ENVIRONMENT": "development"},
    {"ALLOW_HEADER_AUTH": "true", "ENVIRONMENT": "production"},
])
def test_identity_headers_need_development_switch(seed, api_client, monkeypatch, env):
    from flowassist.config import get_settings

    for key, value in env.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()

    by_email = api_client(seed["owner_id"], seed["tenant_id"])
    by_email.headers.pop("X-User-Id")
    by_email.headers.update({"X-User-Email": "owner@alpha.ma"})
    assert by_email.get("/api/v1/users").status_code == 401
    assert api_client(seed["owner_id"], seed["tenant_id"]).get("/api/v1/users").status_code == 401

    # tokens still work
    token = create_access_token({"sub": seed["owner_id"]})
    resp = api_client(seed["owner_id"], seed["tenant_id"]).get(
        "/api/v1/users", headers={"Authorization": f"Bearer {token}"},
    )
    assert resp.status_code == 200
