from __future__ import annotations

import base64
import os
from datetime import datetime, timezone


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_handle(handle: str | None) -> str:
    """GitHub handles compare case-insensitively."""
    return (handle or "").strip().casefold()


def sanitize_next_path(next_path: str | None, default: str = "/") -> str:
    """
    Prevent open-redirects: allow only relative paths like `/sites/12`.
    """
    p = (next_path or "").strip()
    if not p:
        return default
    if not p.startswith("/"):
        return default
    # Disallow scheme-relative: `//evil.com` (and the backslash variant browsers normalize).
    if p.startswith("//") or p.startswith("/\\"):
        return default
    p = p.replace("\r", "").replace("\n", "")
    return p or default
