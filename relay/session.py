from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Connection:
    ws: WebSocket | None
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    client_id: str | None = None


class SessionRegistry:
    """Membership set of live client connections."""

    def __init__(self, max_sessions: int = 10) -> None:
        self._max = max_sessions
        self._connections: set[Connection] = set()
        self._lock = asyncio.Lock()

    async def add(self, ws: WebSocket | None) -> Connection:
        async with self._lock:
            if len(self._connections) >= self._max:
                raise RuntimeError(f"Max sessions ({self._max}) reached")
            conn = Connection(ws=ws)
            self._connections.add(conn)
            logger.info("Connection opened: %s (%d active)", conn.connection_id, len(self._connections))
            return conn

    async def remove(self, conn: Connection) -> None:
        async with self._lock:
            self._connections.discard(conn)
            logger.info("Connection closed: %s (%d active)", conn.connection_id, len(self._connections))

    def __contains__(self, conn: object) -> bool:
        return conn in self._connections

    @property
    def active_count(self) -> int:
        return len(self._connections)
