from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sitegate.auth.config import AuthConfig, load_auth_config
from sitegate.auth.lifecycle import SessionLifecycleManager
from sitegate.auth.reconcile import IdentityReconciler
from sitegate.auth.verifier import TokenVerifier
from sitegate.realtime.authorizer import ChannelAuthorizer, JoinFailureSink
from sitegate.realtime.broker import ChannelBroker
from sitegate.store.base import IdentityStore, MembershipStore, SessionStore
from sitegate.store.config import StoreConfig, load_store_config

logger = logging.getLogger(__name__)


@dataclass
class AuthService:
    """Everything request and realtime handlers need; built once per process."""

    cfg: AuthConfig
    identities: IdentityStore
    sessions: SessionStore
    memberships: MembershipStore
    verifier: TokenVerifier
    reconciler: IdentityReconciler
    lifecycle: SessionLifecycleManager
    broker: ChannelBroker
    join_failures: JoinFailureSink
    channels: ChannelAuthorizer


def build_auth_service(
    cfg: AuthConfig,
    *,
    identities: IdentityStore,
    sessions: SessionStore,
    memberships: MembershipStore,
    verifier: Optional[TokenVerifier] = None,
) -> AuthService:
    verifier = verifier or TokenVerifier(cfg)
    reconciler = IdentityReconciler(identities)
    lifecycle = SessionLifecycleManager(
        cfg, verifier=verifier, reconciler=reconciler, sessions=sessions, identities=identities
    )
    broker = ChannelBroker()
    sink = JoinFailureSink()
    return AuthService(
        cfg=cfg,
        identities=identities,
        sessions=sessions,
        memberships=memberships,
        verifier=verifier,
        reconciler=reconciler,
        lifecycle=lifecycle,
        broker=broker,
        join_failures=sink,
        channels=ChannelAuthorizer(lifecycle=lifecycle, memberships=memberships, broker=broker, sink=sink),
    )


def build_auth_service_from_env(
    cfg: Optional[AuthConfig] = None, store_cfg: Optional[StoreConfig] = None
) -> AuthService:
    """
    Postgres-backed service when Postgres is configured, otherwise in-memory stores.
    """
    cfg = cfg or load_auth_config()
    store_cfg = store_cfg or load_store_config()
    dsn = store_cfg.dsn
    if dsn:
        from sitegate.store.postgres import PostgresIdentityStore, PostgresMembershipStore, PostgresSessionStore

        logger.info("Stores: postgres host=%s db=%s", store_cfg.postgres_host, store_cfg.postgres_db)
        return build_auth_service(
            cfg,
            identities=PostgresIdentityStore(dsn),
            sessions=PostgresSessionStore(dsn),
            memberships=PostgresMembershipStore(dsn),
        )

    from sitegate.store.memory import InMemoryIdentityStore, InMemoryMembershipStore, InMemorySessionStore

    logger.warning("Stores: Postgres not configured; using in-memory stores (sessions are lost on restart)")
    return build_auth_service(
        cfg,
        identities=InMemoryIdentityStore(),
        sessions=InMemorySessionStore(),
        memberships=InMemoryMembershipStore(),
    )
