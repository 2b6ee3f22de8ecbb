from __future__ import annotations

import logging
from typing import Optional

from sitegate.auth.errors import IdentityReconcileFailed
from sitegate.auth.models import Identity, ProviderProfile
from sitegate.auth.util import normalize_handle, utcnow
from sitegate.store.base import DuplicateIdentity, IdentityStore, StoreError

logger = logging.getLogger(__name__)


class IdentityReconciler:
    """
    Find-or-create the local identity for a verified provider profile.

    `email`/`display_handle` are fixed by whichever login created the record. The access
    token, provider user id and sign-in time are rewritten on every call.
    """

    def __init__(self, store: IdentityStore, *, max_attempts: int = 3) -> None:
        self._store = store
        self._max_attempts = max(1, int(max_attempts))

    async def _find_or_create(self, handle: str, profile: ProviderProfile) -> Optional[Identity]:
        defaults = {"email": profile.email, "display_handle": profile.display_handle or profile.handle}
        for attempt in range(1, self._max_attempts + 1):
            found = await self._store.find_by_normalized_handle(handle)
            if found is not None:
                return found
            try:
                created = await self._store.create(handle, defaults)
            except DuplicateIdentity:
                # A concurrent login created it between our lookup and insert.
                logger.info("Identity create for %s lost a race (attempt %d); retrying lookup", handle, attempt)
                continue
            logger.info("Created identity %s (id=%s)", handle, created.id)
            return created
        return None

    async def reconcile(self, profile: ProviderProfile, access_token: str) -> Identity:
        handle = normalize_handle(profile.handle)
        if not handle:
            raise IdentityReconcileFailed(profile.handle or "")
        try:
            identity = await self._find_or_create(handle, profile)
            if identity is None:
                raise IdentityReconcileFailed(handle)
            return await self._store.update(
                identity.id,
                {
                    "provider_access_token": access_token,
                    "provider_user_id": profile.provider_user_id,
                    "last_signed_in_at": utcnow(),
                },
            )
        except StoreError as e:
            logger.warning("Identity store error while reconciling %s: %s", handle, str(e))
            raise IdentityReconcileFailed(handle) from e
