"""
Authentication for the Sitegate server.

Design goals:
- GitHub OAuth is the only identity provider; its tokens are re-checked before any local
  state is trusted.
- Server-side sessions, referenced by a signed HttpOnly cookie.
- One `AuthService` per process, handed to request and realtime handlers explicitly.
"""
