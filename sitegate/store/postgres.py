from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sitegate.auth.models import Identity, SessionRecord
from sitegate.auth.util import utcnow
from sitegate.store.base import UPDATABLE_IDENTITY_FIELDS, DuplicateIdentity, StoreError

logger = logging.getLogger(__name__)

_IDENTITY_COLUMNS = (
    "id, normalized_handle, display_handle, email, provider_user_id, last_signed_in_at, provider_access_token"
)


async def _connect(dsn: str):
    import psycopg

    return await psycopg.AsyncConnection.connect(dsn)


def _row_to_identity(r: Any) -> Identity:
    return Identity(
        id=int(r[0]),
        normalized_handle=str(r[1]),
        display_handle=str(r[2]),
        email=str(r[3]) if r[3] else None,
        provider_user_id=str(r[4]) if r[4] else None,
        last_signed_in_at=r[5],
        provider_access_token=str(r[6]) if r[6] else None,
    )


class PostgresIdentityStore:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    async def _fetch_one(self, query: Any, params: tuple) -> Optional[Identity]:
        import psycopg

        try:
            async with await _connect(self._dsn) as conn:
                cur = await conn.execute(query, params)
                row = await cur.fetchone()
        except psycopg.Error as e:
            raise StoreError(f"identity query failed: {type(e).__name__}") from e
        return _row_to_identity(row) if row else None

    async def find_by_normalized_handle(self, handle: str) -> Optional[Identity]:
        return await self._fetch_one(
            f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE normalized_handle = %s;",
            (handle,),
        )

    async def get(self, identity_id: int) -> Optional[Identity]:
        return await self._fetch_one(f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE id = %s;", (int(identity_id),))

    async def create(self, handle: str, defaults: Dict[str, Any]) -> Identity:
        # ON CONFLICT DO NOTHING makes the insert atomic; no row back means someone else won.
        ident = await self._fetch_one(
            f"""
            INSERT INTO identities(normalized_handle, display_handle, email)
            VALUES (%s, %s, %s)
            ON CONFLICT (normalized_handle) DO NOTHING
            RETURNING {_IDENTITY_COLUMNS};
            """,
            (handle, str(defaults.get("display_handle") or handle), defaults.get("email") or None),
        )
        if ident is None:
            raise DuplicateIdentity(handle)
        return ident

    async def update(self, identity_id: int, fields: Dict[str, Any]) -> Identity:
        from psycopg import sql

        cols = [c for c in UPDATABLE_IDENTITY_FIELDS if c in fields]
        unknown = set(fields) - set(cols)
        if unknown or not cols:
            raise StoreError(f"Cannot update identity fields: {sorted(unknown) or '(none)'}")
        query = sql.SQL("UPDATE identities SET {sets}, updated_at = now() WHERE id = %s RETURNING {cols};").format(
            sets=sql.SQL(", ").join(sql.SQL("{} = %s").format(sql.Identifier(c)) for c in cols),
            cols=sql.SQL(_IDENTITY_COLUMNS),
        )
        ident = await self._fetch_one(query, tuple(fields[c] for c in cols) + (int(identity_id),))
        if ident is None:
            raise StoreError(f"Identity {identity_id} not found")
        return ident


class PostgresMembershipStore:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    async def list_site_ids(self, identity_id: int) -> List[str]:
        import psycopg

        try:
            async with await _connect(self._dsn) as conn:
                cur = await conn.execute(
                    "SELECT site_id FROM site_members WHERE identity_id = %s ORDER BY site_id;",
                    (int(identity_id),),
                )
                rows = await cur.fetchall()
        except psycopg.Error as e:
            raise StoreError(f"membership query failed: {type(e).__name__}") from e
        return [str(r[0]) for r in rows or []]


class PostgresSessionStore:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        import psycopg

        try:
            async with await _connect(self._dsn) as conn:
                cur = await conn.execute(
                    "SELECT data FROM sessions WHERE session_id = %s AND expires_at > now();",
                    (session_id,),
                )
                row = await cur.fetchone()
        except psycopg.Error as e:
            raise StoreError(f"session read failed: {type(e).__name__}") from e
        if not row or not isinstance(row[0], dict):
            return None
        return SessionRecord.from_dict(row[0])

    async def set(self, session_id: str, record: SessionRecord, ttl: int) -> None:
        import psycopg
        from psycopg.types.json import Jsonb

        expires_at = utcnow() + timedelta(seconds=max(1, int(ttl)))
        try:
            async with await _connect(self._dsn) as conn:
                await conn.execute(
                    """
                    INSERT INTO sessions(session_id, data, expires_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (session_id) DO UPDATE SET data = EXCLUDED.data, expires_at = EXCLUDED.expires_at;
                    """,
                    (session_id, Jsonb(record.to_dict()), expires_at),
                )
        except psycopg.Error as e:
            raise StoreError(f"session write failed: {type(e).__name__}") from e

    async def destroy(self, session_id: str) -> None:
        import psycopg

        try:
            async with await _connect(self._dsn) as conn:
                await conn.execute("DELETE FROM sessions WHERE session_id = %s;", (session_id,))
        except psycopg.Error as e:
            raise StoreError(f"session delete failed: {type(e).__name__}") from e

    async def purge_expired(self) -> int:
        import psycopg

        try:
            async with await _connect(self._dsn) as conn:
                cur = await conn.execute("DELETE FROM sessions WHERE expires_at <= now();")
                n = cur.rowcount
        except psycopg.Error as e:
            raise StoreError(f"session purge failed: {type(e).__name__}") from e
        if n:
            logger.info("Purged %d expired session(s)", n)
        return int(n or 0)
