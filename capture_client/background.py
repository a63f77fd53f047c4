from __future__ import annotations

import logging
from typing import Any

from capture_client.state import SessionStateStore
from capture_client.streaming import Connector, StreamingClient
from common.config import ClientSettings
from common.errors import ChannelUnavailable, ConnectionExhausted

logger = logging.getLogger(__name__)


class BackgroundController:
    """Handles action messages from the popup and the detached window.

    Owns the session state store and the streaming client; every other
    context talks to it through ``handle`` and observes state read-only.
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        store: SessionStateStore | None = None,
        connect: Connector | None = None,
    ) -> None:
        self.store = store or SessionStateStore()
        self.client = StreamingClient(settings, self.store, connect=connect)
        self._actions = {
            "initializeWebSocket": self._initialize,
            "processAudioChunk": self._process_audio_chunk,
            "stopRecording": self._stop,
            "getState": self._get_state,
        }

    async def handle(self, message: dict[str, Any]) -> dict[str, Any]:
        if message.get("type") == "windowLoaded":
            return {"state": self.store.snapshot().to_dict()}

        action = message.get("action")
        handler = self._actions.get(action)
        try:
            if handler is None:
                raise ValueError(f"Unknown action: {action}")
            return await handler(message)
        except (ValueError, ChannelUnavailable, ConnectionExhausted) as exc:
            logger.error("Error handling message %s: %s", action, exc)
            return {"error": str(exc)}
        except Exception as exc:
            logger.exception("Unexpected error handling message %s", action)
            return {"error": str(exc)}

    async def _initialize(self, message: dict[str, Any]) -> dict[str, Any]:
        tab_id = message.get("tabId")
        if tab_id is not None:
            self.store.update(active_tab_id=tab_id)
        await self.client.start()
        return {"success": True}

    async def _process_audio_chunk(self, message: dict[str, Any]) -> dict[str, Any]:
        audio = message.get("audioData")
        if not audio:
            raise ValueError("No audio data provided")
        await self.client.send_chunk(bytes(audio))
        return {"success": True}

    async def _stop(self, message: dict[str, Any]) -> dict[str, Any]:
        await self.client.stop()
        self.store.update(active_tab_id=None)
        return {"success": True}

    async def _get_state(self, message: dict[str, Any]) -> dict[str, Any]:
        return self.store.snapshot().to_dict()
