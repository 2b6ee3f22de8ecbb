"""
Pytest config.

Local imports like `import sitegate` rely on the repo root being on sys.path; when a global
`pytest` entrypoint is used that doesn't happen reliably during collection, so it is pinned
here.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterable

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from sitegate.auth.config import AuthConfig, load_auth_config  # noqa: E402
from sitegate.auth.models import SessionRecord, SessionState  # noqa: E402
from sitegate.auth.service import AuthService, build_auth_service  # noqa: E402
from sitegate.auth.util import utcnow  # noqa: E402
from sitegate.store.memory import (  # noqa: E402
    InMemoryIdentityStore,
    InMemoryMembershipStore,
    InMemorySessionStore,
)

TEST_SECRET = "test-secret-key-for-testing-purposes-only"


def make_auth_config(**overrides) -> AuthConfig:
    values = dict(
        github_client_id="test-client-id",
        github_client_secret="test-client-secret",
        github_oauth_url="https://github.com/login/oauth",
        github_api_url="https://api.github.com",
        github_scopes="user,read:org",
        github_allowed_org_ids=frozenset(),
        github_validate_timeout_seconds=2.0,
        public_base_url="http://testserver",
        session_secret=TEST_SECRET,
        session_ttl_seconds=3600,
        cookie_secure=False,
        default_redirect_path="/",
        unauthenticated_path="/",
    )
    values.update(overrides)
    return AuthConfig(**values)


@pytest.fixture(autouse=True)
def _clear_config_cache():
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


@pytest.fixture
def auth_cfg() -> AuthConfig:
    return make_auth_config()


@pytest.fixture
def make_cfg():
    return make_auth_config


@pytest.fixture
def service(auth_cfg: AuthConfig) -> AuthService:
    return build_auth_service(
        auth_cfg,
        identities=InMemoryIdentityStore(),
        sessions=InMemorySessionStore(),
        memberships=InMemoryMembershipStore(),
    )


@pytest.fixture
def login_as(service: AuthService):
    """
    Seed an authenticated session directly in the stores (no provider round trip).

    Returns an async callable: `session_id = await login_as("alice", sites=["1", "2"])`.
    """

    async def _login(handle: str, *, sites: Iterable[str] = ()) -> str:
        ident = await service.identities.find_by_normalized_handle(handle)
        if ident is None:
            ident = await service.identities.create(handle, {"display_handle": handle, "email": None})
        for site_id in sites:
            service.memberships.add(ident.id, site_id)  # type: ignore[attr-defined]
        record = SessionRecord(
            session_id=f"sess-{handle}",
            state=SessionState.AUTHENTICATED,
            identity_ref=ident.id,
            authenticated_at=utcnow(),
        )
        await service.sessions.set(record.session_id, record, 3600)
        return record.session_id

    return _login
