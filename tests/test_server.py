"""
Tests for the HTTP API.

Tests cover:
- Authentication endpoint (Scenario B)
- Entry creation, listing and retrieval
- Rejection of unauthenticated requests on every protected route
- Session expiry through the API (Scenario C)
- Error mapping (validation, not found, integrity)
"""
from datetime import datetime

import pytest

from navigator_vault.session import SessionManager
from navigator_vault.server import create_app
from navigator_vault.storage import EntryStore

from .conftest import MASTER_PASSWORD, flip_ciphertext_bit

GITHUB = {
    "title": "GitHub",
    "username": "user@example.com",
    "password": "secure_password_123",
    "tags": ["dev"],
}

PROTECTED_ROUTES = [
    ("POST", "/api/passwords"),
    ("GET", "/api/passwords"),
    ("GET", "/api/passwords/some-id"),
    ("DELETE", "/api/auth"),
]


@pytest.fixture
def sessions(vault, clock):
    return SessionManager(vault, ttl=120, clock=clock)


@pytest.fixture
async def client(aiohttp_client, sessions):
    return await aiohttp_client(create_app(sessions))


@pytest.fixture
async def token(client):
    resp = await client.post("/api/auth", json={"master_password": MASTER_PASSWORD})
    assert resp.status == 200
    return (await resp.json())["token"]


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestHealth:

    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "service": "navigator-vault"}


class TestAuthEndpoint:
    """POST/DELETE /api/auth."""

    async def test_login(self, client, sessions, clock):
        resp = await client.post("/api/auth", json={"master_password": MASTER_PASSWORD})
        assert resp.status == 200
        body = await resp.json()
        assert set(body) == {"token", "expires_at"}
        expires_at = datetime.fromisoformat(body["expires_at"].replace("Z", "+00:00"))
        assert expires_at.tzinfo is not None
        assert (expires_at - clock.now).total_seconds() == 120
        assert sessions.active_count == 1

    async def test_wrong_password(self, client, sessions):
        """Scenario B: 401, no token, no session."""
        resp = await client.post("/api/auth", json={"master_password": "wrong_password"})
        assert resp.status == 401
        assert await resp.json() == {"error": "invalid credentials"}
        assert sessions.active_count == 0

    @pytest.mark.parametrize("body", [b"", b"{not json", b"[]", b'{"password": "x"}', b'{"master_password": ""}'])
    async def test_malformed_request(self, client, sessions, body):
        resp = await client.post(
            "/api/auth", data=body, headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400
        assert "error" in await resp.json()
        assert sessions.active_count == 0

    async def test_logout(self, client, token, sessions):
        resp = await client.delete("/api/auth", headers=bearer(token))
        assert resp.status == 204
        assert sessions.active_count == 0
        resp = await client.get("/api/passwords", headers=bearer(token))
        assert resp.status == 401
        assert await resp.json() == {"error": "invalid token"}


class TestPasswordsEndpoint:
    """Entry routes with a valid session."""

    async def test_create_and_list(self, client, token):
        resp = await client.post("/api/passwords", json=GITHUB, headers=bearer(token))
        assert resp.status == 201
        entry_id = (await resp.json())["id"]

        resp = await client.get("/api/passwords", headers=bearer(token))
        assert resp.status == 200
        [summary] = await resp.json()
        assert summary["id"] == entry_id
        assert summary["title"] == "GitHub"
        assert summary["username"] == "user@example.com"
        assert summary["tags"] == ["dev"]
        assert "password" not in summary
        assert "ciphertext" not in summary

    async def test_get_entry(self, client, token):
        resp = await client.post("/api/passwords", json=GITHUB, headers=bearer(token))
        entry_id = (await resp.json())["id"]
        resp = await client.get(f"/api/passwords/{entry_id}", headers=bearer(token))
        assert resp.status == 200
        body = await resp.json()
        assert body["password"] == "secure_password_123"
        assert body["id"] == entry_id

    async def test_get_missing_entry(self, client, token):
        resp = await client.get("/api/passwords/nope", headers=bearer(token))
        assert resp.status == 404
        assert await resp.json() == {"error": "not found"}

    @pytest.mark.parametrize("body", [
        {"title": "", "password": "x"},
        {"title": "GitHub"},
        {"title": "GitHub", "password": "x", "tags": [""]},
    ])
    async def test_create_invalid(self, client, token, vault, body):
        resp = await client.post("/api/passwords", json=body, headers=bearer(token))
        assert resp.status == 400
        payload = await resp.json()
        assert payload["details"]
        assert list(vault.epoch.records_dir.glob("*.rec")) == []

    async def test_sort_and_search(self, client, token):
        for title in ("beta", "Alpha", "gamma"):
            await client.post("/api/passwords", json={"title": title, "password": "x"}, headers=bearer(token))
        resp = await client.get("/api/passwords", params={"sort": "title"}, headers=bearer(token))
        assert [e["title"] for e in await resp.json()] == ["Alpha", "beta", "gamma"]

        resp = await client.get("/api/passwords", params={"q": "gam"}, headers=bearer(token))
        assert [e["title"] for e in await resp.json()] == ["gamma"]

        resp = await client.get("/api/passwords", params={"sort": "password"}, headers=bearer(token))
        assert resp.status == 400

    async def test_tampered_record(self, client, token, vault):
        await client.post("/api/passwords", json=GITHUB, headers=bearer(token))
        [path] = vault.epoch.records_dir.glob("*.rec")
        flip_ciphertext_bit(path)
        resp = await client.get("/api/passwords", headers=bearer(token))
        assert resp.status == 500
        assert await resp.json() == {"error": "unable to decrypt"}


class TestUnauthorized:
    """Requests without a valid token never reach the entry store."""

    @pytest.fixture(autouse=True)
    def forbid_store(self, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("entry store reached without a valid session")

        for name in ("create", "read", "list", "search", "update", "delete"):
            monkeypatch.setattr(EntryStore, name, fail)

    @pytest.mark.parametrize("method,path", PROTECTED_ROUTES)
    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Basic dXNlcjpwYXNz"},
        {"Authorization": "Bearer"},
        {"Authorization": "Bearer not-a-real-token"},
    ])
    async def test_rejected(self, client, method, path, headers):
        resp = await client.request(method, path, json=GITHUB, headers=headers)
        assert resp.status == 401
        assert await resp.json() == {"error": "invalid token"}

    @pytest.mark.parametrize("method,path", PROTECTED_ROUTES)
    async def test_expired_token(self, client, token, clock, method, path):
        """Scenario C: a token used past its TTL is rejected as expired."""
        clock.advance(seconds=121)
        resp = await client.request(method, path, json=GITHUB, headers=bearer(token))
        assert resp.status == 401
        assert await resp.json() == {"error": "session expired"}

    @pytest.mark.parametrize("method,path", PROTECTED_ROUTES)
    async def test_locked_vault(self, client, token, sessions, method, path):
        sessions.vault.lock()
        resp = await client.request(method, path, json=GITHUB, headers=bearer(token))
        assert resp.status == 401
        assert await resp.json() == {"error": "session expired"}
