from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, List, Set

from sitegate.auth.lifecycle import SessionLifecycleManager
from sitegate.auth.util import utcnow
from sitegate.realtime.broker import ChannelBroker, Connection
from sitegate.store.base import MembershipStore

logger = logging.getLogger(__name__)


def channel_for_site(site_id: str) -> str:
    return f"site:{site_id}"


@dataclass(frozen=True)
class JoinFailure:
    connection_id: str
    error: str
    at: datetime


class JoinFailureSink:
    """
    Where failed channel joins go.

    Users never see these; operators get a log line with traceback and `recent()` for
    inspection (surfaced by /healthz).
    """

    def __init__(self, maxlen: int = 200) -> None:
        self._recent: Deque[JoinFailure] = deque(maxlen=maxlen)
        self._total = 0

    def record(self, connection: Connection, exc: BaseException) -> None:
        self._total += 1
        self._recent.append(
            JoinFailure(connection_id=connection.connection_id, error=f"{type(exc).__name__}: {exc}", at=utcnow())
        )
        logger.error(
            "Channel join failed for connection %s", connection.connection_id, exc_info=(type(exc), exc, exc.__traceback__)
        )

    def recent(self) -> List[JoinFailure]:
        return list(self._recent)

    @property
    def total(self) -> int:
        return self._total


class ChannelAuthorizer:
    def __init__(
        self,
        *,
        lifecycle: SessionLifecycleManager,
        memberships: MembershipStore,
        broker: ChannelBroker,
        sink: JoinFailureSink,
    ) -> None:
        self._lifecycle = lifecycle
        self._memberships = memberships
        self._broker = broker
        self._sink = sink

    async def authorize(self, connection: Connection) -> Set[str]:
        """
        Join `connection` to the channels of its identity's sites.

        Never raises. Anonymous connections get no channels; on failure the connection is
        left in no channels and the error goes to the sink.
        """
        if not connection.session_id:
            return set()
        try:
            identity = await self._lifecycle.deserialize(connection.session_id)
            if identity is None:
                return set()
            site_ids = await self._memberships.list_site_ids(identity.id)
            channels = {channel_for_site(s) for s in site_ids}
            for channel in sorted(channels):
                await self._broker.join(connection, channel)
        except Exception as e:
            self._sink.record(connection, e)
            try:
                await self._broker.leave_all(connection)
            except Exception as cleanup_err:
                self._sink.record(connection, cleanup_err)
            return set()
        logger.info(
            "Connection %s (%s) joined %d channel(s)", connection.connection_id, identity.normalized_handle, len(channels)
        )
        return channels

    def schedule(self, connection: Connection) -> "asyncio.Task[Set[str]]":
        """Run `authorize` as its own task; anything that escapes is funneled to the sink."""
        task = asyncio.create_task(self.authorize(connection), name=f"channel-join:{connection.connection_id}")

        def _done(t: "asyncio.Task[Set[str]]") -> None:
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self._sink.record(connection, exc)

        task.add_done_callback(_done)
        return task
