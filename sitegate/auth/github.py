"""
Blocking GitHub OAuth/API calls.

Everything here uses `requests` with explicit timeouts; async callers run these in a worker
thread (`asyncio.to_thread`) so the event loop never waits on GitHub.
"""

from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from sitegate.auth.config import AuthConfig
from sitegate.auth.models import ProviderProfile

_ACCEPT_JSON = {"Accept": "application/json"}
_API_HEADERS = {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"}


def _require_app(cfg: AuthConfig) -> None:
    if not cfg.github_client_id or not cfg.github_client_secret:
        raise ValueError("GitHub OAuth client ID/secret not configured")


def build_authorize_url(cfg: AuthConfig, *, redirect_uri: str, state: str) -> str:
    """Build the GitHub authorization URL the browser is sent to."""
    if not cfg.github_client_id:
        raise ValueError("GitHub OAuth client ID not configured")
    params = {
        "client_id": cfg.github_client_id,
        "redirect_uri": redirect_uri,
        "scope": cfg.github_scopes,
        "state": state,
        "allow_signup": "false",
    }
    return f"{cfg.github_oauth_url}/authorize?{urlencode(params)}"


def exchange_code_for_token(cfg: AuthConfig, *, redirect_uri: str, code: str, timeout: float = 10) -> str:
    """
    Exchange an authorization code for an access token.

    GitHub answers HTTP 200 with an `error` field for bad codes, so both are checked.
    """
    _require_app(cfg)
    payload = {
        "client_id": cfg.github_client_id,
        "client_secret": cfg.github_client_secret,
        "code": code,
        "redirect_uri": redirect_uri,
    }
    r = requests.post(f"{cfg.github_oauth_url}/access_token", data=payload, headers=_ACCEPT_JSON, timeout=timeout)
    if r.status_code >= 400:
        # Avoid leaking sensitive info; include minimal context.
        raise ValueError(f"Token exchange failed (status={r.status_code})")
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid token response")
    if data.get("error"):
        raise ValueError(f"Token exchange failed ({data.get('error')})")
    token = str(data.get("access_token") or "").strip()
    if not token:
        raise ValueError("Missing access_token in token response")
    return token


def fetch_profile(cfg: AuthConfig, access_token: str, *, timeout: float = 10) -> ProviderProfile:
    """Fetch the authenticated user's profile (`GET /user`)."""
    r = requests.get(
        f"{cfg.github_api_url}/user",
        headers={**_API_HEADERS, "Authorization": f"Bearer {access_token}"},
        timeout=timeout,
    )
    if r.status_code >= 400:
        raise ValueError(f"Profile fetch failed (status={r.status_code})")
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid profile response")
    login = str(data.get("login") or "").strip()
    user_id = data.get("id")
    if not login or user_id is None:
        raise ValueError("Profile missing login/id")
    email = str(data.get("email") or "").strip() or None
    return ProviderProfile(handle=login, display_handle=login, provider_user_id=str(user_id), email=email)


def _check_token(cfg: AuthConfig, access_token: str, *, timeout: float) -> Dict[str, Any]:
    """
    Ask GitHub whether the token is live for this OAuth app.

    `POST /applications/{client_id}/token` answers 200 for a valid token and 404/422 otherwise.
    """
    _require_app(cfg)
    r = requests.post(
        f"{cfg.github_api_url}/applications/{cfg.github_client_id}/token",
        json={"access_token": access_token},
        auth=(str(cfg.github_client_id), str(cfg.github_client_secret)),
        headers=_API_HEADERS,
        timeout=timeout,
    )
    if r.status_code != 200:
        raise ValueError(f"Token check rejected (status={r.status_code})")
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid token check response")
    return data


def _org_ids(cfg: AuthConfig, access_token: str, *, timeout: float) -> set:
    r = requests.get(
        f"{cfg.github_api_url}/user/orgs",
        headers={**_API_HEADERS, "Authorization": f"Bearer {access_token}"},
        params={"per_page": 100},
        timeout=timeout,
    )
    if r.status_code >= 400:
        raise ValueError(f"Organization lookup failed (status={r.status_code})")
    data = r.json()
    if not isinstance(data, list):
        raise ValueError("Invalid organization list")
    out = set()
    for org in data:
        if isinstance(org, dict) and org.get("id") is not None:
            try:
                out.add(int(org["id"]))
            except (TypeError, ValueError):
                continue
    return out


def validate_token(cfg: AuthConfig, access_token: str, *, timeout: Optional[float] = None) -> None:
    """
    Validate an access token with GitHub.

    Raises on any problem (HTTP error, network error, malformed body, org mismatch); the
    caller collapses all of them into one outcome.
    """
    t = float(timeout if timeout is not None else cfg.github_validate_timeout_seconds)
    if not (access_token or "").strip():
        raise ValueError("Empty access token")
    _check_token(cfg, access_token, timeout=t)
    if cfg.github_allowed_org_ids:
        if not (_org_ids(cfg, access_token, timeout=t) & set(cfg.github_allowed_org_ids)):
            raise ValueError("User is not a member of an approved organization")
