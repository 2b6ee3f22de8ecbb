from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Set

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """A realtime client connection as seen by the broker."""

    connection_id: str
    session_id: Optional[str]

    async def send_json(self, message: Dict[str, Any]) -> None:
        ...


class ChannelBroker:
    """
    In-process channel registry and fan-out.

    Single event loop only; the lock serializes membership changes, not sends.
    """

    def __init__(self) -> None:
        self._members: Dict[str, Dict[str, Connection]] = {}
        self._joined: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def join(self, connection: Connection, channel: str) -> None:
        async with self._lock:
            self._members.setdefault(channel, {})[connection.connection_id] = connection
            self._joined.setdefault(connection.connection_id, set()).add(channel)
        logger.debug("Connection %s joined %s", connection.connection_id, channel)

    async def leave(self, connection: Connection, channel: str) -> None:
        async with self._lock:
            self._drop(connection.connection_id, channel)

    async def leave_all(self, connection: Connection) -> None:
        async with self._lock:
            for channel in list(self._joined.get(connection.connection_id, set())):
                self._drop(connection.connection_id, channel)
            self._joined.pop(connection.connection_id, None)

    def _drop(self, connection_id: str, channel: str) -> None:
        members = self._members.get(channel)
        if members is not None:
            members.pop(connection_id, None)
            if not members:
                del self._members[channel]
        joined = self._joined.get(connection_id)
        if joined is not None:
            joined.discard(channel)
            if not joined:
                del self._joined[connection_id]

    def channels_for(self, connection: Connection) -> Set[str]:
        return set(self._joined.get(connection.connection_id, set()))

    def members(self, channel: str) -> List[str]:
        return sorted(self._members.get(channel, {}))

    async def publish(self, channel: str, message: Dict[str, Any]) -> int:
        """
        Send `message` to every connection on `channel`.

        A failed send drops that connection from the channel; other deliveries proceed.
        Returns the number of successful deliveries.
        """
        targets = list(self._members.get(channel, {}).values())
        if not targets:
            return 0
        results = await asyncio.gather(
            *(c.send_json({"channel": channel, **message}) for c in targets), return_exceptions=True
        )
        delivered = 0
        for conn, res in zip(targets, results):
            if isinstance(res, BaseException):
                logger.info("Dropping connection %s from %s after send error: %s", conn.connection_id, channel, res)
                await self.leave(conn, channel)
            else:
                delivered += 1
        return delivered
