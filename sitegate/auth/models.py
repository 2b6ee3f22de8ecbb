from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from dateutil import parser as date_parser


@dataclass(frozen=True)
class Identity:
    """Local account for a GitHub user, keyed by the case-folded handle."""

    id: int
    normalized_handle: str
    display_handle: str
    email: Optional[str]
    provider_user_id: Optional[str] = None
    last_signed_in_at: Optional[datetime] = None
    # Sensitive: never logged, never rendered.
    provider_access_token: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class ProviderProfile:
    """Profile returned by the provider after the code exchange."""

    handle: str
    display_handle: str
    provider_user_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class ProviderSuccess:
    profile: ProviderProfile
    access_token: str = field(repr=False)


@dataclass(frozen=True)
class ProviderFailure:
    reason: str  # for logs only; never shown to the user


ProviderResult = Union[ProviderSuccess, ProviderFailure]


class SessionState(str, enum.Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"  # in-flight only, never persisted
    AUTHENTICATED = "authenticated"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class FlashMessage:
    title: str
    message: str


@dataclass
class SessionRecord:
    """Server-side state for one browser session."""

    session_id: str
    state: SessionState = SessionState.ANONYMOUS
    identity_ref: Optional[int] = None
    authenticated_at: Optional[datetime] = None
    pending_redirect_path: Optional[str] = None
    flash: Dict[str, List[FlashMessage]] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED and self.identity_ref is not None

    def add_flash(self, kind: str, msg: FlashMessage) -> None:
        self.flash.setdefault(kind, []).append(msg)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "identity_ref": self.identity_ref,
            "authenticated_at": self.authenticated_at.isoformat() if self.authenticated_at else None,
            "pending_redirect_path": self.pending_redirect_path,
            "flash": {k: [{"title": m.title, "message": m.message} for m in v] for k, v in self.flash.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        try:
            state = SessionState(str(data.get("state") or SessionState.ANONYMOUS.value))
        except ValueError:
            state = SessionState.ANONYMOUS
        try:
            identity_ref = int(data["identity_ref"]) if data.get("identity_ref") is not None else None
        except (TypeError, ValueError):
            identity_ref = None
        authenticated_at = None
        if data.get("authenticated_at"):
            try:
                authenticated_at = date_parser.isoparse(str(data["authenticated_at"]))
            except (ValueError, TypeError):
                authenticated_at = None

        # identity_ref and Authenticated go together; anything else reads back as anonymous.
        if state == SessionState.AUTHENTICATING or (state == SessionState.AUTHENTICATED) != (identity_ref is not None):
            state, identity_ref, authenticated_at = SessionState.ANONYMOUS, None, None
        if state != SessionState.AUTHENTICATED:
            identity_ref, authenticated_at = None, None

        flash: Dict[str, List[FlashMessage]] = {}
        raw_flash = data.get("flash")
        if isinstance(raw_flash, dict):
            for kind, items in raw_flash.items():
                if not isinstance(items, list):
                    continue
                flash[str(kind)] = [
                    FlashMessage(title=str(i.get("title") or ""), message=str(i.get("message") or ""))
                    for i in items
                    if isinstance(i, dict)
                ]

        return cls(
            session_id=str(data.get("session_id") or ""),
            state=state,
            identity_ref=identity_ref,
            authenticated_at=authenticated_at,
            pending_redirect_path=str(data["pending_redirect_path"]) if data.get("pending_redirect_path") else None,
            flash=flash,
        )
