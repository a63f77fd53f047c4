from __future__ import annotations

import asyncio
import json
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse

from common.config import RelaySettings
from common.schemas import (
    ClientMessageType,
    ConnectionMessage,
    ErrorMessage,
    StatusMessage,
    to_frame,
)
from relay.pipeline import IngestPipeline, ResultMessage
from relay.session import Connection, SessionRegistry

logger = logging.getLogger(__name__)

settings = RelaySettings()
app = FastAPI(title="Tab Transcription Relay")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
registry = SessionRegistry(max_sessions=settings.max_sessions)
pipeline = IngestPipeline(settings)

# Strong references to scheduled ingest cycles
_in_flight: set[asyncio.Task] = set()

_STATUS_PAGE = """\
<!DOCTYPE html>
<html>
<head><title>Audio Transcription Server</title></head>
<body>
    <h1>Audio Transcription Server</h1>
    <p>Server is running and ready to accept WebSocket connections.</p>
    <p>WebSocket endpoint: ws://{host}:{port}{path}</p>
</body>
</html>
"""


@app.get("/", response_class=HTMLResponse)
async def index():
    return _STATUS_PAGE.format(host="localhost", port=settings.port, path=settings.websocket_path)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "active_sessions": registry.active_count,
        "in_flight_chunks": len(_in_flight),
    }


@app.websocket(settings.websocket_path)
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    try:
        conn = await registry.add(ws)
    except RuntimeError as exc:
        logger.warning("Rejecting connection: %s", exc)
        await ws.send_text(to_frame(ErrorMessage(error=str(exc))))
        await ws.close()
        return

    try:
        await ws.send_text(to_frame(ConnectionMessage()))
        deliver = _deliver_to(conn)

        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                break

            if message.get("bytes") is not None:
                _schedule(pipeline.process(message["bytes"], deliver, conn.connection_id))
            elif message.get("text") is not None:
                await _handle_control(conn, message["text"])

    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", conn.connection_id)
    except Exception:
        logger.exception("Unexpected error in websocket endpoint")
    finally:
        # in-flight cycles keep running; their frames become undeliverable
        await registry.remove(conn)


def _schedule(coro) -> None:
    task = asyncio.create_task(coro)
    _in_flight.add(task)
    task.add_done_callback(_in_flight.discard)
    task.add_done_callback(_log_task_failure)


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Ingest cycle crashed", exc_info=task.exception())


def _deliver_to(conn: Connection):
    async def deliver(message: ResultMessage) -> None:
        if conn not in registry:
            logger.info("Dropping %s frame for closed connection %s", message.type.value, conn.connection_id)
            return
        try:
            await conn.ws.send_text(to_frame(message))
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.info("Undeliverable %s frame for %s: %s", message.type.value, conn.connection_id, exc)

    return deliver


async def _handle_control(conn: Connection, raw: str) -> None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Dropping unparseable control frame from %s: %.80r", conn.connection_id, raw)
        return
    if not isinstance(data, dict):
        logger.warning("Dropping non-object control frame from %s", conn.connection_id)
        return

    if data.get("type") == ClientMessageType.initialize:
        conn.client_id = data.get("clientId")
        logger.info("Client %s initialized on %s", conn.client_id, conn.connection_id)
        await conn.ws.send_text(to_frame(StatusMessage(status="initialized")))
    else:
        logger.info("Ignoring control frame of type %r from %s", data.get("type"), conn.connection_id)


def run() -> None:
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    run()
