"""
Session state machine.

    anonymous --start_handshake--> anonymous (+ pending redirect)
    anonymous --complete_handshake(ok)--> [authenticating] --> authenticated (under a new id)
    anonymous --complete_handshake(fail)--> anonymous (+ flash error)
    any --logout / TTL expiry--> destroyed (record gone)

`authenticating` only exists while `complete_handshake` runs; it is never written to the
session store, so a crash mid-handshake leaves the stored session anonymous.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sitegate.auth.config import AuthConfig
from sitegate.auth.errors import AuthError, SessionNotFound
from sitegate.auth.models import (
    FlashMessage,
    Identity,
    ProviderFailure,
    ProviderResult,
    SessionRecord,
    SessionState,
)
from sitegate.auth.reconcile import IdentityReconciler
from sitegate.auth.util import random_token, sanitize_next_path, utcnow
from sitegate.auth.verifier import TokenVerifier
from sitegate.store.base import IdentityStore, SessionStore, StoreError

logger = logging.getLogger(__name__)

UNAUTHORIZED_TITLE = "Unauthorized"
ACCESS_DENIED_MESSAGE = (
    "Apologies; you don't have access to Sitegate! Please contact the Sitegate team if this is in error."
)


@dataclass
class HandshakeOutcome:
    session: SessionRecord
    redirect_to: str
    authenticated: bool
    identity: Optional[Identity] = None


class SessionLifecycleManager:
    def __init__(
        self,
        cfg: AuthConfig,
        *,
        verifier: TokenVerifier,
        reconciler: IdentityReconciler,
        sessions: SessionStore,
        identities: IdentityStore,
    ) -> None:
        self._cfg = cfg
        self._verifier = verifier
        self._reconciler = reconciler
        self._sessions = sessions
        self._identities = identities

    async def _save(self, session: SessionRecord) -> None:
        if session.state in (SessionState.AUTHENTICATING, SessionState.DESTROYED):
            raise ValueError(f"Refusing to persist session in state {session.state.value}")
        await self._sessions.set(session.session_id, session, self._cfg.session_ttl_seconds)

    async def require(self, session_id: str) -> SessionRecord:
        """Live session for `session_id`, or SessionNotFound."""
        record = await self._sessions.get(session_id) if session_id else None
        if record is None or record.state == SessionState.DESTROYED:
            raise SessionNotFound(session_id or "")
        return record

    async def load(self, session_id: Optional[str]) -> SessionRecord:
        """
        Existing session, or a fresh anonymous one (not persisted until something is stored on it).

        A store that can't be read counts as no session, so login and logout still redirect.
        """
        try:
            return await self.require(session_id or "")
        except SessionNotFound:
            pass
        except StoreError as e:
            logger.error("Session read failed for %s...: %s", (session_id or "")[:8], str(e))
        return SessionRecord(session_id=random_token(24))

    async def start_handshake(self, session: SessionRecord, desired_redirect_path: Optional[str]) -> SessionRecord:
        """Remember where to go after login. The session stays anonymous."""
        if desired_redirect_path:
            session.pending_redirect_path = sanitize_next_path(
                desired_redirect_path, default=self._cfg.default_redirect_path
            )
        else:
            session.pending_redirect_path = None
        await self._save(session)
        logger.debug("Handshake started for session %s...", session.session_id[:8])
        return session

    async def _fail(self, session: SessionRecord, reason: str) -> HandshakeOutcome:
        logger.warning("Authentication failed for session %s...: %s", session.session_id[:8], reason)
        session.state = SessionState.ANONYMOUS
        session.identity_ref = None
        session.authenticated_at = None
        session.pending_redirect_path = None
        # Replace rather than append: repeated failures before a read still show one message.
        session.flash["error"] = [FlashMessage(title=UNAUTHORIZED_TITLE, message=ACCESS_DENIED_MESSAGE)]
        try:
            await self._save(session)
        except Exception as e:
            # The redirect still happens; only the flash is lost.
            logger.error("Could not persist flash for session %s...: %s", session.session_id[:8], str(e))
        return HandshakeOutcome(session=session, redirect_to=self._cfg.unauthenticated_path, authenticated=False)

    async def complete_handshake(self, session: SessionRecord, result: ProviderResult) -> HandshakeOutcome:
        """
        Finish a provider round trip.

        Verification runs to completion before reconciliation starts. Any failure leaves the
        session anonymous with one `Unauthorized` flash; nothing is retried.
        """
        if isinstance(result, ProviderFailure):
            return await self._fail(session, f"provider failure: {result.reason}")

        session.state = SessionState.AUTHENTICATING
        try:
            await self._verifier.verify(result.access_token)
            identity = await self._reconciler.reconcile(result.profile, result.access_token)
        except AuthError as e:
            return await self._fail(session, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception("Unexpected error during handshake")
            return await self._fail(session, f"unexpected {type(e).__name__}")

        redirect_to = session.pending_redirect_path or self._cfg.default_redirect_path
        # New id on login; a cookie planted before authentication is worthless afterwards.
        promoted = SessionRecord(
            session_id=random_token(24),
            state=SessionState.AUTHENTICATED,
            identity_ref=identity.id,
            authenticated_at=utcnow(),
            pending_redirect_path=None,
            flash=session.flash,
        )
        try:
            await self._save(promoted)
        except Exception as e:
            logger.error("Could not persist authenticated session %s...: %s", session.session_id[:8], str(e))
            return await self._fail(session, "session store unavailable")
        try:
            await self._sessions.destroy(session.session_id)
        except StoreError as e:
            # The old record holds nothing authenticated; it expires on its own.
            logger.warning("Could not drop pre-login session %s...: %s", session.session_id[:8], str(e))

        session.session_id = promoted.session_id
        session.state = promoted.state
        session.identity_ref = promoted.identity_ref
        session.authenticated_at = promoted.authenticated_at
        session.pending_redirect_path = None
        logger.info("Session %s... authenticated as %s", session.session_id[:8], identity.normalized_handle)
        return HandshakeOutcome(session=session, redirect_to=redirect_to, authenticated=True, identity=identity)

    async def logout(self, session: SessionRecord) -> str:
        """Destroy the session; the cookie's id resolves to nothing afterwards."""
        await self._sessions.destroy(session.session_id)
        session.state = SessionState.DESTROYED
        session.identity_ref = None
        session.authenticated_at = None
        logger.info("Session %s... logged out", session.session_id[:8])
        return self._cfg.default_redirect_path

    async def deserialize(self, session_id: Optional[str]) -> Optional[Identity]:
        """Identity behind `session_id`, or None (anonymous) when there is none."""
        try:
            record = await self.require(session_id or "")
        except SessionNotFound:
            return None
        if not record.is_authenticated or record.identity_ref is None:
            return None
        return await self._identities.get(record.identity_ref)

    async def consume_flash(self, session: SessionRecord) -> Dict[str, List[FlashMessage]]:
        """Return and clear the one-shot messages."""
        if not session.flash:
            return {}
        out = session.flash
        session.flash = {}
        await self._save(session)
        return out
