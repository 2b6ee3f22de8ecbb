"""
In-process stores.

Used for local development and tests. State lives in this process only; a restart logs
everyone out.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sitegate.auth.models import Identity, SessionRecord
from sitegate.store.base import UPDATABLE_IDENTITY_FIELDS, DuplicateIdentity, StoreError

logger = logging.getLogger(__name__)


class InMemoryIdentityStore:
    def __init__(self) -> None:
        self._by_id: Dict[int, Identity] = {}
        self._by_handle: Dict[str, int] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def find_by_normalized_handle(self, handle: str) -> Optional[Identity]:
        ident_id = self._by_handle.get(handle)
        return self._by_id.get(ident_id) if ident_id is not None else None

    async def get(self, identity_id: int) -> Optional[Identity]:
        return self._by_id.get(int(identity_id))

    async def create(self, handle: str, defaults: Dict[str, Any]) -> Identity:
        async with self._lock:
            if handle in self._by_handle:
                raise DuplicateIdentity(handle)
            ident = Identity(
                id=self._next_id,
                normalized_handle=handle,
                display_handle=str(defaults.get("display_handle") or handle),
                email=defaults.get("email") or None,
            )
            self._next_id += 1
            self._by_id[ident.id] = ident
            self._by_handle[handle] = ident.id
            return ident

    async def update(self, identity_id: int, fields: Dict[str, Any]) -> Identity:
        unknown = set(fields) - set(UPDATABLE_IDENTITY_FIELDS)
        if unknown:
            raise StoreError(f"Cannot update identity fields: {sorted(unknown)}")
        async with self._lock:
            cur = self._by_id.get(int(identity_id))
            if cur is None:
                raise StoreError(f"Identity {identity_id} not found")
            updated = replace(cur, **fields)
            self._by_id[updated.id] = updated
            return updated

    def count(self) -> int:
        return len(self._by_id)


class InMemoryMembershipStore:
    def __init__(self) -> None:
        self._sites: Dict[int, Set[str]] = {}

    def add(self, identity_id: int, site_id: str) -> None:
        self._sites.setdefault(int(identity_id), set()).add(str(site_id))

    def remove(self, identity_id: int, site_id: str) -> None:
        self._sites.get(int(identity_id), set()).discard(str(site_id))

    async def list_site_ids(self, identity_id: int) -> List[str]:
        return sorted(self._sites.get(int(identity_id), set()))


class InMemorySessionStore:
    """
    Session records with per-record expiry (monotonic clock).

    Expired records are dropped on read and swept on write at most every `sweep_interval`
    seconds, so sessions that are never read again don't accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, *, sweep_interval: float = 60.0) -> None:
        self._data: Dict[str, Tuple[float, SessionRecord]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep = 0.0

    def _sweep(self, now: float) -> int:
        expired = [sid for sid, (expires_at, _) in self._data.items() if now >= expires_at]
        for sid in expired:
            del self._data[sid]
        self._next_sweep = now + self._sweep_interval
        return len(expired)

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        async with self._lock:
            entry = self._data.get(session_id)
            if entry is None:
                return None
            expires_at, record = entry
            if self._clock() >= expires_at:
                del self._data[session_id]
                return None
            # Callers mutate records; hand out copies so only `set` changes stored state.
            return copy.deepcopy(record)

    async def set(self, session_id: str, record: SessionRecord, ttl: int) -> None:
        async with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
            self._data[session_id] = (now + max(1, int(ttl)), copy.deepcopy(record))

    async def destroy(self, session_id: str) -> None:
        async with self._lock:
            self._data.pop(session_id, None)

    async def purge_expired(self) -> int:
        async with self._lock:
            n = self._sweep(self._clock())
        if n:
            logger.info("Purged %d expired session(s)", n)
        return n

    def count(self) -> int:
        return len(self._data)
