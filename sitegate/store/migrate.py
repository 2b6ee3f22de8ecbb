"""
Forward-only SQL migrations for the Postgres stores.

Files under `migrations/` are applied in name order, one transaction each, under a
session-level advisory lock so concurrent replicas starting together don't race. Each
applied file's sha256 is recorded; editing an applied file is an error rather than a
silent no-op.
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from sitegate.store.base import StoreError
from sitegate.store.config import StoreConfig, load_store_config

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

MIGRATION_LOCK_KEY = 5170230811  # bigint, any stable value

_SCHEMA_MIGRATIONS_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version text PRIMARY KEY,
  checksum text NOT NULL,
  applied_at timestamptz NOT NULL DEFAULT now()
);
"""


class MigrationError(StoreError):
    pass


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str
    sql: str

    @classmethod
    def from_path(cls, path: Path) -> "Migration":
        raw = path.read_bytes()
        return cls(
            version=path.name.split(".")[0],
            path=path,
            checksum=hashlib.sha256(raw).hexdigest(),
            sql=raw.decode("utf-8"),
        )


def load_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    if not directory.is_dir():
        return []
    return [Migration.from_path(p) for p in sorted(directory.glob("*.sql")) if p.is_file()]


def pending(migrations: Iterable[Migration], applied: Dict[str, str]) -> List[Migration]:
    """Migrations not yet applied; raises if an applied one changed on disk."""
    out: List[Migration] = []
    for m in migrations:
        prev = applied.get(m.version)
        if prev is None:
            out.append(m)
        elif prev != m.checksum:
            raise MigrationError(f"Migration checksum mismatch for {m.version}: db={prev[:12]} file={m.checksum[:12]}")
    return out


@contextmanager
def _locked(dsn: str) -> Iterator:
    import psycopg

    with psycopg.connect(dsn) as conn:
        conn.execute("SELECT pg_advisory_lock(%s);", (MIGRATION_LOCK_KEY,))
        try:
            conn.execute(_SCHEMA_MIGRATIONS_DDL)
            yield conn
        finally:
            conn.execute("SELECT pg_advisory_unlock(%s);", (MIGRATION_LOCK_KEY,))


def _applied(conn) -> Dict[str, str]:
    rows = conn.execute("SELECT version, checksum FROM schema_migrations;").fetchall()
    return {str(version): str(checksum) for version, checksum in rows}


def apply_migrations(*, dsn: str, migrations: Optional[Iterable[Migration]] = None) -> Tuple[int, List[str]]:
    """
    Apply pending migrations.

    Returns: (applied_count, applied_versions)
    """
    migs = list(migrations) if migrations is not None else load_migrations()
    done: List[str] = []
    with _locked(dsn) as conn:
        for m in pending(migs, _applied(conn)):
            with conn.transaction():
                conn.execute(m.sql)
                conn.execute(
                    "INSERT INTO schema_migrations(version, checksum) VALUES (%s, %s);",
                    (m.version, m.checksum),
                )
            logger.info("Applied migration %s", m.version)
            done.append(m.version)
    return len(done), done


def maybe_auto_migrate(cfg: Optional[StoreConfig] = None) -> Tuple[bool, str]:
    """
    Auto-migrate on startup when DB_AUTO_MIGRATE=1 and Postgres is configured.

    Returns: (did_attempt, message)
    """
    cfg = cfg or load_store_config()
    if not cfg.db_auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    dsn = cfg.dsn
    if not dsn:
        return False, "Postgres DSN not configured"
    try:
        n, versions = apply_migrations(dsn=dsn)
    except Exception as e:
        return True, f"Migration failed: {e}"
    if n:
        return True, f"Applied {n} migration(s): {', '.join(versions)}"
    return True, "No pending migrations"
