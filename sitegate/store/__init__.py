"""Storage for identities, memberships and sessions.

Two backends implement the same async interfaces: an in-memory one (dev/tests) and Postgres.
Postgres drivers are imported lazily so the in-memory path runs without DB access.
"""

from __future__ import annotations
