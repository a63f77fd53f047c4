from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from capture_client.state import SessionStateStore
from common.config import ClientSettings
from common.errors import ChannelUnavailable, ConnectionExhausted
from common.schemas import (
    ClientMessageType,
    InitializeMessage,
    Notification,
    NotificationType,
    ServerMessageType,
    TranscriptMessage,
    to_frame,
)

logger = logging.getLogger(__name__)

Listener = Callable[[Notification], None]
Connector = Callable[[str], Awaitable[Any]]


class ChannelState(str, Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    open = "open"
    closing = "closing"
    closed = "closed"


class StreamingClient:
    """Persistent connection to the relay with capped automatic reconnects.

    Reconnects happen only while the session is recording and fewer than
    ``max_reconnect_attempts`` attempts have been made since the last
    successful open. Once the cap is hit the client stays closed until
    ``restart`` is called.
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        store: SessionStateStore | None = None,
        connect: Connector | None = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        self.store = store or SessionStateStore()
        self._connect = connect or websockets.connect
        self.state = ChannelState.disconnected
        self._ws = None
        self._task: asyncio.Task | None = None
        self._opened: asyncio.Event | None = None
        self._listeners: dict[NotificationType, list[Listener]] = defaultdict(list)

    def on(self, kind: NotificationType, listener: Listener) -> None:
        self._listeners[kind].append(listener)

    @property
    def is_open(self) -> bool:
        return self.state is ChannelState.open and self._ws is not None

    async def start(self) -> None:
        """Begin recording and wait until the channel is open.

        Raises ConnectionExhausted if no connection could be established
        within the reconnect budget.
        """
        previous = self._task
        if previous is not None:
            if not previous.done():
                return
            if not previous.cancelled() and previous.exception() is not None:
                logger.info("Previous connection ended: %s", previous.exception())
        self.store.update(is_recording=True, reconnect_attempts=0)
        self._opened = asyncio.Event()
        task = self._task = asyncio.create_task(self._run())

        opened = asyncio.create_task(self._opened.wait())
        done, _ = await asyncio.wait({opened, task}, return_when=asyncio.FIRST_COMPLETED)
        if opened not in done:
            opened.cancel()
            if not task.cancelled():
                task.result()

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    async def stop(self) -> None:
        self.store.update(is_recording=False, reconnect_attempts=0)
        task, ws = self._task, self._ws

        if ws is not None and self.state is ChannelState.open:
            self.state = ChannelState.closing
            await ws.close(code=1000, reason="Recording stopped by user")

        if task is not None:
            if ws is None and not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except ConnectionExhausted:
                pass

        self._task = None
        self._ws = None
        self.state = ChannelState.closed

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task

    async def send_chunk(self, data: bytes) -> None:
        if not self.is_open:
            raise ChannelUnavailable("WebSocket connection not available")
        try:
            await self._ws.send(data)
        except ConnectionClosed as exc:
            raise ChannelUnavailable("WebSocket connection not available") from exc

    async def _run(self) -> None:
        url = self.settings.server_url
        while True:
            self.state = ChannelState.connecting
            logger.info("Connecting to %s", url)
            try:
                ws = await self._connect(url)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("Failed to connect to %s: %s", url, exc)
            else:
                await self._serve(ws)

            self._ws = None
            self.state = ChannelState.closed
            session = self.store.snapshot()
            if not session.is_recording:
                return

            if session.reconnect_attempts >= self.settings.max_reconnect_attempts:
                detail = f"Connection lost after {session.reconnect_attempts} reconnect attempts"
                logger.error(detail)
                self._notify(Notification(type=NotificationType.error, detail=detail))
                raise ConnectionExhausted(detail)

            attempts = session.reconnect_attempts + 1
            self.store.update(reconnect_attempts=attempts)
            logger.info("Attempting reconnection %d/%d", attempts, self.settings.max_reconnect_attempts)
            await asyncio.sleep(self.settings.reconnect_delay_s * attempts)
            if not self.store.snapshot().is_recording:
                return

    async def _serve(self, ws) -> None:
        self._ws = ws
        self.state = ChannelState.open
        self.store.update(reconnect_attempts=0)
        self._opened.set()
        logger.info("WebSocket connected")

        try:
            await ws.send(to_frame(InitializeMessage(client_id=self.settings.client_id)))
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as exc:
            logger.info("WebSocket closed: %s", exc)
        else:
            logger.info("WebSocket closed")

    def _dispatch(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            logger.warning("Ignoring unexpected binary frame (%d bytes)", len(raw))
            return
        try:
            data = json.loads(raw)
            kind = data["type"]
        except (json.JSONDecodeError, TypeError, KeyError):
            logger.error("Error processing WebSocket message: %.80r", raw)
            self._notify(Notification(type=NotificationType.error, detail="Failed to process server message"))
            return

        if kind in (ServerMessageType.connection, ServerMessageType.status, ClientMessageType.initialize):
            logger.info("Connection status: %s", data.get("status") or "established")
            self._notify(Notification(type=NotificationType.status, detail=data.get("status") or "established"))

        elif kind == ServerMessageType.transcript:
            try:
                message = TranscriptMessage.model_validate(data)
            except ValidationError:
                logger.error("Malformed transcript frame: %.80r", raw)
                self._notify(Notification(type=NotificationType.error, detail="Failed to process server message"))
                return
            if not message.text:
                # silent chunk: nothing to store, but the chunk is accounted for
                self._notify(Notification(type=NotificationType.status, detail="noSpeech", chunk_id=message.chunk_id))
                return
            self.store.record_transcript(message.chunk_id, message.text)
            self._notify(Notification(
                type=NotificationType.transcript_ready,
                chunk_id=message.chunk_id,
                text=message.text,
                timestamp=message.timestamp,
            ))

        elif kind == ServerMessageType.error:
            logger.error("Server error: %s", data.get("error"))
            self._notify(Notification(
                type=NotificationType.error,
                detail=data.get("error"),
                chunk_id=data.get("chunkId"),
            ))

        else:
            logger.warning("Unhandled message type: %s", kind)

    def _notify(self, notification: Notification) -> None:
        for listener in list(self._listeners[notification.type]):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed")
