from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from sitegate.api.app import create_app
from sitegate.auth.models import ProviderProfile
from sitegate.auth.session import encode_session_id, session_cookie_name

ALICE = ProviderProfile(handle="Alice", display_handle="Alice", provider_user_id="42", email="alice@example.gov")


@pytest.fixture
def github_ok(monkeypatch):
    monkeypatch.setattr(
        "sitegate.auth.github.exchange_code_for_token",
        lambda cfg, *, redirect_uri, code, timeout=10: f"gho_{code}",
    )
    monkeypatch.setattr("sitegate.auth.github.fetch_profile", lambda cfg, token, *, timeout=10: ALICE)
    monkeypatch.setattr("sitegate.auth.github.validate_token", lambda cfg, token, *, timeout=None: None)


def _start(c: TestClient, redirect: str | None = None) -> str:
    params = {"redirect": redirect} if redirect else {}
    r = c.get("/auth/github", params=params, follow_redirects=False)
    assert r.status_code == 302
    loc = r.headers["location"]
    assert loc.startswith("https://github.com/login/oauth/authorize?")
    return parse_qs(urlparse(loc).query)["state"][0]


def test_healthz_is_public(service) -> None:
    with TestClient(create_app(service)) as c:
        r = c.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "joinFailures": 0}


def test_me_requires_auth(service) -> None:
    with TestClient(create_app(service)) as c:
        r = c.get("/api/auth/me")
    assert r.status_code == 401
    # We intentionally do NOT set WWW-Authenticate to avoid browser auth popups.
    assert "www-authenticate" not in {k.lower() for k in r.headers.keys()}


def test_login_disabled_without_github_app(make_cfg) -> None:
    from sitegate.auth.service import build_auth_service
    from sitegate.store.memory import InMemoryIdentityStore, InMemoryMembershipStore, InMemorySessionStore

    svc = build_auth_service(
        make_cfg(github_client_id=None, github_client_secret=None),
        identities=InMemoryIdentityStore(),
        sessions=InMemorySessionStore(),
        memberships=InMemoryMembershipStore(),
    )
    with TestClient(create_app(svc)) as c:
        r = c.get("/auth/github", follow_redirects=False)
    assert r.status_code == 403


def test_login_success_lands_on_pending_path(service, github_ok) -> None:
    with TestClient(create_app(service)) as c:
        state = _start(c, "/sites/7")
        r = c.get("/auth/github/callback", params={"code": "abc", "state": state}, follow_redirects=False)
        assert r.status_code == 302
        assert r.headers["location"] == "/sites/7"
        assert r.headers["cache-control"] == "no-store"
        set_cookie = r.headers.get("set-cookie", "")
        assert session_cookie_name(service.cfg) in set_cookie
        assert "httponly" in set_cookie.lower()

        me = c.get("/api/auth/me")
        assert me.status_code == 200
        body = me.json()
        assert body["ok"] is True
        assert body["user"]["username"] == "Alice"
        assert "gho_abc" not in me.text


def test_pre_login_cookie_is_replaced_on_login(service, github_ok) -> None:
    name = session_cookie_name(service.cfg)
    with TestClient(create_app(service)) as c:
        state = _start(c)
        planted = c.cookies.get(name)
        c.get("/auth/github/callback", params={"code": "abc", "state": state}, follow_redirects=False)
        assert c.cookies.get(name) != planted
        assert c.get("/api/auth/me").status_code == 200

    with TestClient(create_app(service)) as c2:
        r = c2.get("/api/auth/me", headers={"cookie": f"{name}={planted}"})
    assert r.status_code == 401


def test_login_success_without_redirect_goes_to_default(service, github_ok) -> None:
    with TestClient(create_app(service)) as c:
        state = _start(c)
        r = c.get("/auth/github/callback", params={"code": "abc", "state": state}, follow_redirects=False)
    assert r.headers["location"] == "/"


def test_rejected_token_redirects_with_one_shot_flash(service, github_ok, monkeypatch) -> None:
    def _reject(cfg, token, *, timeout=None):  # type: ignore[no-untyped-def]
        raise ValueError("Token check rejected (status=404)")

    monkeypatch.setattr("sitegate.auth.github.validate_token", _reject)
    with TestClient(create_app(service)) as c:
        state = _start(c, "/sites/7")
        r = c.get("/auth/github/callback", params={"code": "abc", "state": state}, follow_redirects=False)
        assert r.status_code == 302
        assert r.headers["location"] == "/"

        assert c.get("/api/auth/me").status_code == 401
        flash = c.get("/api/flash").json()["flash"]
        assert len(flash["error"]) == 1
        assert flash["error"][0]["title"] == "Unauthorized"
        assert c.get("/api/flash").json()["flash"] == {}


def test_state_mismatch_is_a_failed_login(service, github_ok) -> None:
    with TestClient(create_app(service)) as c:
        _start(c, "/sites/7")
        r = c.get("/auth/github/callback", params={"code": "abc", "state": "forged"}, follow_redirects=False)
        assert r.headers["location"] == "/"
        assert c.get("/api/flash").json()["flash"]["error"][0]["title"] == "Unauthorized"


def test_provider_error_param_is_a_failed_login(service, github_ok) -> None:
    with TestClient(create_app(service)) as c:
        state = _start(c)
        r = c.get(
            "/auth/github/callback", params={"error": "access_denied", "state": state}, follow_redirects=False
        )
    assert r.headers["location"] == "/"


def test_logout_clears_cookie_and_session(service, github_ok) -> None:
    with TestClient(create_app(service)) as c:
        state = _start(c)
        c.get("/auth/github/callback", params={"code": "abc", "state": state}, follow_redirects=False)
        old_cookie = c.cookies.get(session_cookie_name(service.cfg))
        assert c.get("/api/auth/me").status_code == 200

        r = c.post("/logout", follow_redirects=False)
        assert r.status_code == 302
        assert r.headers["location"] == "/"
        assert c.get("/api/auth/me").status_code == 401

    # Replaying the old cookie does not resurrect the session.
    with TestClient(create_app(service)) as c2:
        r = c2.get("/api/auth/me", headers={"cookie": f"{session_cookie_name(service.cfg)}={old_cookie}"})
    assert r.status_code == 401


def test_tampered_cookie_is_anonymous(service, login_as) -> None:
    session_id = asyncio.run(login_as("alice"))
    good = encode_session_id(service.cfg, session_id)
    with TestClient(create_app(service)) as c:
        ok = c.get("/api/auth/me", headers={"cookie": f"{session_cookie_name(service.cfg)}={good}"})
        bad = c.get("/api/auth/me", headers={"cookie": f"{session_cookie_name(service.cfg)}={good}x"})
    assert ok.status_code == 200
    assert bad.status_code == 401


def test_websocket_joins_member_channels(service, login_as) -> None:
    session_id = asyncio.run(login_as("alice", sites=["1", "2"]))
    cookie = f"{session_cookie_name(service.cfg)}={encode_session_id(service.cfg, session_id)}"
    with TestClient(create_app(service)) as c:
        with c.websocket_connect("/ws", headers={"cookie": cookie}) as ws:
            assert ws.receive_json() == {"type": "ready", "channels": ["site:1", "site:2"]}
            ws.send_text("ping")
            assert ws.receive_json() == {"type": "pong"}


def test_websocket_anonymous_gets_no_channels(service) -> None:
    with TestClient(create_app(service)) as c:
        with c.websocket_connect("/ws") as ws:
            assert ws.receive_json() == {"type": "ready", "channels": []}
