"""
Сессионные токены и определение игрока по заголовкам.
"""
import asyncio

import httpx
import pytest
from fastapi import HTTPException

import api.auth
from api.auth import get_principal, issue_token, require_bearer, verify_token


def test_token_roundtrip():
    token = issue_token(42, ttl_sec=60, now=1_000_000)
    assert verify_token(token, now=1_000_030) == 42


def test_token_expired():
    token = issue_token(42, ttl_sec=60, now=1_000_000)
    assert verify_token(token, now=1_000_061) is None


def test_token_tampered():
    token = issue_token(42, ttl_sec=60, now=1_000_000)
    _, expires, signature = token.split(":")
    assert verify_token(f"43:{expires}:{signature}", now=1_000_000) is None
    assert verify_token("garbage", now=1_000_000) is None


def test_bearer_wins_over_header():
    token = issue_token(7)
    principal = asyncio.run(get_principal(authorization=f"Bearer {token}", x_player_id="9"))
    assert principal.player_id == 7


def test_header_identity_only_when_allowed(monkeypatch):
    assert asyncio.run(get_principal(authorization=None, x_player_id="9")).player_id == 9
    monkeypatch.setattr(api.auth, "ALLOW_HEADER_AUTH", False)
    with pytest.raises(HTTPException) as exc:
        asyncio.run(get_principal(authorization=None, x_player_id="9"))
    assert exc.value.status_code == 401


def test_header_identity_must_be_integer():
    with pytest.raises(HTTPException) as exc:
        asyncio.run(get_principal(authorization=None, x_player_id="abc"))
    assert exc.value.status_code == 400


def test_require_bearer_rejects_header_identity():
    with pytest.raises(HTTPException) as exc:
        asyncio.run(require_bearer(authorization=None))
    assert exc.value.status_code == 401


def test_invalid_token_without_auth_service(monkeypatch):
    monkeypatch.setattr(api.auth, "AUTH_SERVICE_URL", "")
    with pytest.raises(HTTPException) as exc:
        asyncio.run(get_principal(authorization="Bearer nope", x_player_id=None))
    assert exc.value.status_code == 401


def test_external_token_resolves_player(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/verify"
        return httpx.Response(200, json={"external_id": "ext-1", "username": "ada"})

    transport = httpx.MockTransport(handler)
    real_client = httpx.AsyncClient

    async def fake_ensure_player(external_id, username=None):
        assert (external_id, username) == ("ext-1", "ada")
        return 31

    monkeypatch.setattr(api.auth, "AUTH_SERVICE_URL", "http://auth.local")
    monkeypatch.setattr(api.auth.httpx, "AsyncClient", lambda **kw: real_client(transport=transport, **kw))
    monkeypatch.setattr(api.auth, "ensure_player", fake_ensure_player)

    principal = asyncio.run(get_principal(authorization="Bearer external-token", x_player_id=None))
    assert principal.player_id == 31
    assert principal.external_id == "ext-1"


def test_external_service_rejects(monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"detail": "bad"}))
    real_client = httpx.AsyncClient
    monkeypatch.setattr(api.auth, "AUTH_SERVICE_URL", "http://auth.local")
    monkeypatch.setattr(api.auth.httpx, "AsyncClient", lambda **kw: real_client(transport=transport, **kw))
    with pytest.raises(HTTPException) as exc:
        asyncio.run(get_principal(authorization="Bearer external-token", x_player_id=None))
    assert exc.value.status_code == 401
