from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name) or "").strip() or None


@dataclass(frozen=True)
class StoreConfig:
    # Either a full DSN or all of host/db/user/password.
    postgres_dsn: Optional[str]
    postgres_host: Optional[str]
    postgres_port: int
    postgres_db: Optional[str]
    postgres_user: Optional[str]
    postgres_password: Optional[str]

    db_auto_migrate: bool  # apply pending migrations at server startup
    purge_sessions_on_startup: bool

    @property
    def dsn(self) -> Optional[str]:
        if self.postgres_dsn:
            return self.postgres_dsn
        if not (self.postgres_host and self.postgres_db and self.postgres_user and self.postgres_password):
            return None
        # make_conninfo quotes spaces/quotes in passwords.
        from psycopg.conninfo import make_conninfo

        return make_conninfo(
            host=self.postgres_host,
            port=self.postgres_port,
            dbname=self.postgres_db,
            user=self.postgres_user,
            password=self.postgres_password,
        )


def load_store_config() -> StoreConfig:
    try:
        port = int((os.getenv("POSTGRES_PORT") or "").strip() or "5432")
    except ValueError:
        port = 5432

    return StoreConfig(
        postgres_dsn=_env_str("POSTGRES_DSN"),
        postgres_host=_env_str("POSTGRES_HOST"),
        postgres_port=port,
        postgres_db=_env_str("POSTGRES_DB"),
        postgres_user=_env_str("POSTGRES_USER"),
        postgres_password=_env_str("POSTGRES_PASSWORD"),
        db_auto_migrate=_env_bool("DB_AUTO_MIGRATE", False),
        purge_sessions_on_startup=_env_bool("SESSION_PURGE_ON_STARTUP", True),
    )
