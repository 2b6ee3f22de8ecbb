from __future__ import annotations

import pytest

from sitegate.auth.models import FlashMessage, SessionRecord, SessionState
from sitegate.auth.util import utcnow
from sitegate.store.base import DuplicateIdentity, StoreError
from sitegate.store.config import load_store_config
from sitegate.store.memory import InMemoryIdentityStore, InMemoryMembershipStore, InMemorySessionStore
from sitegate.store.migrate import Migration, MigrationError, load_migrations, maybe_auto_migrate, pending


@pytest.mark.asyncio
async def test_identity_create_is_unique_per_handle() -> None:
    store = InMemoryIdentityStore()
    a = await store.create("alice", {"display_handle": "Alice"})
    with pytest.raises(DuplicateIdentity):
        await store.create("alice", {"display_handle": "ALICE"})
    assert (await store.get(a.id)).display_handle == "Alice"
    assert (await store.find_by_normalized_handle("alice")).id == a.id


@pytest.mark.asyncio
async def test_identity_update_rejects_unknown_fields() -> None:
    store = InMemoryIdentityStore()
    a = await store.create("alice", {})
    with pytest.raises(StoreError):
        await store.update(a.id, {"normalized_handle": "mallory"})
    with pytest.raises(StoreError):
        await store.update(999, {"provider_user_id": "1"})
    updated = await store.update(a.id, {"provider_user_id": "7"})
    assert updated.provider_user_id == "7"


@pytest.mark.asyncio
async def test_memberships() -> None:
    store = InMemoryMembershipStore()
    store.add(1, "b")
    store.add(1, "a")
    store.add(2, "c")
    assert await store.list_site_ids(1) == ["a", "b"]
    store.remove(1, "a")
    assert await store.list_site_ids(1) == ["b"]
    assert await store.list_site_ids(3) == []


@pytest.mark.asyncio
async def test_session_store_returns_copies_and_destroys() -> None:
    store = InMemorySessionStore()
    await store.set("s1", SessionRecord(session_id="s1", pending_redirect_path="/x"), 60)

    got = await store.get("s1")
    got.pending_redirect_path = "/mutated"
    assert (await store.get("s1")).pending_redirect_path == "/x"

    await store.destroy("s1")
    assert await store.get("s1") is None
    await store.destroy("s1")


def test_session_record_dict_keeps_flash_and_auth() -> None:
    rec = SessionRecord(
        session_id="s1", state=SessionState.AUTHENTICATED, identity_ref=3, authenticated_at=utcnow()
    )
    rec.add_flash("error", FlashMessage(title="Unauthorized", message="nope"))
    back = SessionRecord.from_dict(rec.to_dict())
    assert back.is_authenticated
    assert back.identity_ref == 3
    assert back.authenticated_at == rec.authenticated_at
    assert back.flash == {"error": [FlashMessage(title="Unauthorized", message="nope")]}


@pytest.mark.parametrize(
    "data",
    [
        {"session_id": "s", "state": "authenticating", "identity_ref": 1},
        {"session_id": "s", "state": "authenticated", "identity_ref": None},
        {"session_id": "s", "state": "anonymous", "identity_ref": 1},
        {"session_id": "s", "state": "bogus"},
        {"session_id": "s", "state": "authenticated", "identity_ref": "not-a-number"},
    ],
)
def test_inconsistent_records_read_back_anonymous(data) -> None:
    rec = SessionRecord.from_dict(data)
    assert rec.state == SessionState.ANONYMOUS
    assert rec.identity_ref is None
    assert not rec.is_authenticated


def test_bundled_migrations_load() -> None:
    migs = load_migrations()
    assert [m.version for m in migs][:1] == ["0001_identities_sessions"]
    assert len(migs[0].checksum) == 64
    assert "CREATE TABLE" in migs[0].sql


def test_pending_skips_applied_and_detects_drift(tmp_path) -> None:
    (tmp_path / "0001_a.sql").write_text("SELECT 1;")
    (tmp_path / "0002_b.sql").write_text("SELECT 2;")
    migs = load_migrations(tmp_path)
    first: Migration = migs[0]

    assert [m.version for m in pending(migs, {first.version: first.checksum})] == ["0002_b"]
    with pytest.raises(MigrationError):
        pending(migs, {first.version: "0" * 64})


def test_auto_migrate_disabled_by_default(monkeypatch) -> None:
    monkeypatch.delenv("DB_AUTO_MIGRATE", raising=False)
    did, msg = maybe_auto_migrate()
    assert did is False
    assert "disabled" in msg


def test_auto_migrate_without_postgres(monkeypatch) -> None:
    monkeypatch.setenv("DB_AUTO_MIGRATE", "1")
    for name in ("POSTGRES_DSN", "POSTGRES_HOST", "POSTGRES_DB", "POSTGRES_USER", "POSTGRES_PASSWORD"):
        monkeypatch.delenv(name, raising=False)
    assert maybe_auto_migrate() == (False, "Postgres DSN not configured")


def test_store_config_dsn(monkeypatch) -> None:
    monkeypatch.setenv("POSTGRES_DSN", "postgresql://u:p@db/sitegate")
    assert load_store_config().dsn == "postgresql://u:p@db/sitegate"

    monkeypatch.delenv("POSTGRES_DSN")
    monkeypatch.setenv("POSTGRES_HOST", "db")
    monkeypatch.delenv("POSTGRES_PASSWORD", raising=False)
    assert load_store_config().dsn is None


@pytest.mark.asyncio
async def test_session_store_sweeps_expired_on_write() -> None:
    now = [1000.0]
    store = InMemorySessionStore(clock=lambda: now[0])
    for i in range(1000):
        await store.set(f"s{i}", SessionRecord(session_id=f"s{i}"), 60)
    assert store.count() == 1000

    now[0] += 3600
    await store.set("fresh", SessionRecord(session_id="fresh"), 60)

    assert store.count() == 1
    assert await store.get("fresh") is not None


@pytest.mark.asyncio
async def test_session_store_purge_expired() -> None:
    now = [0.0]
    store = InMemorySessionStore(clock=lambda: now[0])
    await store.set("short", SessionRecord(session_id="short"), 10)
    await store.set("long", SessionRecord(session_id="long"), 1000)

    now[0] = 20.0
    assert await store.purge_expired() == 1
    assert store.count() == 1
    assert await store.get("long") is not None
