from __future__ import annotations

from typing import Optional

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from sitegate.auth.config import AuthConfig


def session_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-sitegate_session" if cfg.cookie_secure else "sitegate_session"


SESSION_SALT = "sitegate-session-v1"


def _serializer(cfg: AuthConfig) -> Optional[URLSafeTimedSerializer]:
    if not cfg.session_secret:
        return None
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def encode_session_id(cfg: AuthConfig, session_id: str) -> Optional[str]:
    """Sign a session id for the cookie. The session state itself stays server-side."""
    s = _serializer(cfg)
    if s is None:
        return None
    return s.dumps(session_id)


def decode_session_id(cfg: AuthConfig, value: str | None) -> Optional[str]:
    if not value:
        return None
    s = _serializer(cfg)
    if s is None:
        return None
    try:
        raw = s.loads(value, max_age=cfg.session_ttl_seconds)
    except (BadSignature, BadTimeSignature, ValueError):
        return None
    if not isinstance(raw, str) or not raw:
        return None
    return raw


def cookie_kwargs(cfg: AuthConfig, key: str, value: str, *, max_age: int, path: str = "/") -> dict:
    """`Response.set_cookie` arguments shared by every Sitegate cookie (HttpOnly, SameSite=Lax)."""
    return dict(key=key, value=value, max_age=max_age, path=path, httponly=True, samesite="lax", secure=cfg.cookie_secure)


def session_cookie_kwargs(cfg: AuthConfig, value: str = "") -> dict:
    """Session cookie arguments; no value means clear it."""
    return cookie_kwargs(cfg, session_cookie_name(cfg), value, max_age=cfg.session_ttl_seconds if value else 0)
