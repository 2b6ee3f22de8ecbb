from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import FrozenSet, List, Optional


@dataclass(frozen=True)
class AuthConfig:
    # GitHub OAuth app
    github_client_id: Optional[str]
    github_client_secret: Optional[str]
    github_oauth_url: str  # authorize + access_token live under this base
    github_api_url: str
    github_scopes: str
    github_allowed_org_ids: FrozenSet[int]  # empty = any org (token check only)
    github_validate_timeout_seconds: float

    # Session configuration
    public_base_url: Optional[str]  # Required for the OAuth redirect_uri
    session_secret: Optional[str]  # Required for cookie signing
    session_ttl_seconds: int
    cookie_secure: bool

    # Redirect targets
    default_redirect_path: str
    unauthenticated_path: str

    @property
    def github_enabled(self) -> bool:
        """GitHub login is enabled once the OAuth app credentials are configured."""
        return bool(self.github_client_id and self.github_client_secret)


def _parse_int_csv(value: str) -> List[int]:
    out: List[int] = []
    for part in (value or "").split(","):
        s = part.strip()
        if not s:
            continue
        try:
            out.append(int(s))
        except ValueError:
            continue
    return out


def _path_env(name: str, default: str) -> str:
    p = (os.getenv(name, "") or "").strip()
    if not p.startswith("/") or p.startswith("//"):
        return default
    return p


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    GitHub login is enabled if GITHUB_CLIENT_ID and GITHUB_CLIENT_SECRET are set.
    """
    public_base_url = (os.getenv("AUTH_PUBLIC_BASE_URL", "") or "").strip() or None
    cookie_secure_env = (os.getenv("AUTH_COOKIE_SECURE", "") or "").strip().lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies when base URL is https; otherwise allow local dev.
        cookie_secure = True if (public_base_url or "").startswith("https://") else False

    ttl = int(float((os.getenv("AUTH_SESSION_TTL_SECONDS", "") or "43200").strip() or "43200"))  # 12h default
    if ttl <= 60:
        ttl = 60

    timeout_raw = (os.getenv("GITHUB_VALIDATE_TIMEOUT_SECONDS", "") or "").strip() or "10"
    try:
        timeout = float(timeout_raw)
    except ValueError:
        timeout = 10.0
    if timeout <= 0:
        timeout = 10.0

    return AuthConfig(
        github_client_id=(os.getenv("GITHUB_CLIENT_ID", "") or "").strip() or None,
        github_client_secret=(os.getenv("GITHUB_CLIENT_SECRET", "") or "").strip() or None,
        github_oauth_url=((os.getenv("GITHUB_OAUTH_URL", "") or "").strip() or "https://github.com/login/oauth").rstrip(
            "/"
        ),
        github_api_url=((os.getenv("GITHUB_API_URL", "") or "").strip() or "https://api.github.com").rstrip("/"),
        github_scopes=(os.getenv("GITHUB_SCOPES", "") or "").strip() or "user,read:org",
        github_allowed_org_ids=frozenset(_parse_int_csv(os.getenv("GITHUB_ALLOWED_ORG_IDS", ""))),
        github_validate_timeout_seconds=timeout,
        public_base_url=public_base_url,
        session_secret=(os.getenv("AUTH_SESSION_SECRET", "") or "").strip() or None,
        session_ttl_seconds=ttl,
        cookie_secure=cookie_secure,
        default_redirect_path=_path_env("AUTH_DEFAULT_REDIRECT_PATH", "/"),
        unauthenticated_path=_path_env("AUTH_UNAUTHENTICATED_PATH", "/"),
    )
