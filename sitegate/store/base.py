from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from sitegate.auth.models import Identity, SessionRecord


class StoreError(Exception):
    """A store could not complete an operation."""


class DuplicateIdentity(StoreError):
    """`create` lost to an existing record with the same normalized handle."""

    def __init__(self, handle: str) -> None:
        super().__init__(f"Identity already exists: {handle!r}")
        self.handle = handle


class IdentityStore(Protocol):
    async def find_by_normalized_handle(self, handle: str) -> Optional[Identity]:
        ...

    async def get(self, identity_id: int) -> Optional[Identity]:
        ...

    async def create(self, handle: str, defaults: Dict[str, Any]) -> Identity:
        """
        Atomically create the identity for `handle`.

        Raises DuplicateIdentity when a record for the handle already exists.
        """

    async def update(self, identity_id: int, fields: Dict[str, Any]) -> Identity:
        ...


class MembershipStore(Protocol):
    async def list_site_ids(self, identity_id: int) -> List[str]:
        """Sites the identity is a member of, read fresh on every call."""


class SessionStore(Protocol):
    async def get(self, session_id: str) -> Optional[SessionRecord]:
        """Live (unexpired) record or None."""

    async def set(self, session_id: str, record: SessionRecord, ttl: int) -> None:
        ...

    async def destroy(self, session_id: str) -> None:
        ...


# Columns callers may pass to IdentityStore.update.
UPDATABLE_IDENTITY_FIELDS = ("provider_access_token", "provider_user_id", "last_signed_in_at")
