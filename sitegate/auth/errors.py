from __future__ import annotations


class AuthError(Exception):
    """Base class for authentication outcomes that are handled, not surfaced."""


class ExternalValidationFailed(AuthError):
    """
    The provider rejected the token or could not be reached.

    Deliberately carries no detail for the client: invalid tokens, timeouts and provider
    outages all look the same from the outside.
    """

    def __init__(self, reason: str = "validation failed") -> None:
        super().__init__(reason)
        self.reason = reason


class IdentityReconcileFailed(AuthError):
    def __init__(self, handle: str) -> None:
        super().__init__(f"Unable to find or create identity {handle!r}")
        self.handle = handle


class SessionNotFound(AuthError):
    def __init__(self, session_id: str) -> None:
        # Only a prefix; the full id is a bearer credential.
        super().__init__(f"Session not found ({session_id[:8]}...)")
        self.session_id = session_id
