import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from fastapi import WebSocketDisconnect
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """A live channel bound to one student identity.

    ``connection_id`` tags this instance so that a late ``unbind`` from a
    replaced connection cannot remove its successor.
    """
    websocket: Any
    student_id: str | None = None
    connection_id: str = field(default_factory=lambda: uuid4().hex)
    bound_at: float = field(default_factory=time.monotonic)
    closed: bool = False

    def is_open(self) -> bool:
        if self.closed:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, data: dict) -> bool:
        """Write *data* to the channel; False (and marked closed) if the write fails."""
        if not self.is_open():
            return False
        try:
            await self.websocket.send_json(data)
            return True
        except (WebSocketDisconnect, RuntimeError):
            self.closed = True
            return False


class ConnectionRegistry:
    """Maps each student identity to at most one live :class:`Connection`."""

    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def bind(self, student_id: str, connection: Connection) -> Connection | None:
        """Bind *connection* to *student_id*, returning the connection it replaced."""
        async with self._lock:
            connection.student_id = student_id
            previous = self._connections.get(student_id)
            self._connections[student_id] = connection

        if previous is not None and previous is not connection:
            logger.info(
                "Student %s reconnected; connection %s replaces %s",
                student_id, connection.connection_id, previous.connection_id,
            )
        else:
            logger.info("Student %s connected (%s)", student_id, connection.connection_id)
        return previous

    async def unbind(self, student_id: str, connection_id: str | None = None) -> bool:
        """Remove the entry for *student_id*. Idempotent.

        With *connection_id*, only removes the entry if it still belongs to
        that connection instance.
        """
        async with self._lock:
            current = self._connections.get(student_id)
            if current is None:
                return False
            if connection_id is not None and current.connection_id != connection_id:
                stale = True
            else:
                del self._connections[student_id]
                stale = False

        if stale:
            logger.debug(
                "Ignoring stale unbind for %s from %s (current %s)",
                student_id, connection_id, current.connection_id,
            )
            return False
        logger.info("Student %s disconnected (%s)", student_id, current.connection_id)
        return True

    async def get(self, student_id: str) -> Connection | None:
        async with self._lock:
            return self._connections.get(student_id)

    async def is_live(self, student_id: str) -> bool:
        """Snapshot check: a connection is bound and its channel is open right now."""
        connection = await self.get(student_id)
        return connection is not None and connection.is_open()

    async def send(self, student_id: str, message: dict) -> bool:
        """Push *message* to the student's live connection, if there is one.

        True means the channel accepted the write, not that the peer read it.
        """
        connection = await self.get(student_id)
        if connection is None:
            return False
        # Write outside the lock so a slow peer cannot stall bind/unbind
        return await connection.send_json(message)

    async def count(self) -> int:
        async with self._lock:
            return len(self._connections)

    async def identities(self) -> list[str]:
        async with self._lock:
            return list(self._connections)
