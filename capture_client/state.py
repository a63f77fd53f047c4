"""Session state shared between the background controller and its UIs.

The store is the only writer. Popup and detached-window views hold a
``StateMirror``: a cached snapshot that is refreshed whenever the store
publishes, or explicitly through ``resync``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientSession:
    is_recording: bool = False
    active_tab_id: Optional[int] = None
    current_transcript: str = ""
    reconnect_attempts: int = 0
    transcript_chunks: Mapping[int, str] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> dict:
        return {
            "isRecording": self.is_recording,
            "activeTabId": self.active_tab_id,
            "currentTranscript": self.current_transcript,
            "reconnectAttempts": self.reconnect_attempts,
            "transcriptChunks": sorted(self.transcript_chunks.items()),
        }


Observer = Callable[[ClientSession], None]


class SessionStateStore:
    def __init__(self) -> None:
        self._state = ClientSession()
        self._observers: list[Observer] = []

    def snapshot(self) -> ClientSession:
        return self._state

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self) -> None:
        snapshot = self._state
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("State observer failed")

    def update(self, **changes) -> ClientSession:
        self._state = replace(self._state, **changes)
        self.publish()
        return self._state

    def record_transcript(self, chunk_id: int, text: str) -> ClientSession:
        chunks = dict(self._state.transcript_chunks)
        chunks[chunk_id] = text
        # results may arrive out of order; assemble by chunk id
        transcript = " ".join(chunks[key] for key in sorted(chunks))
        return self.update(
            transcript_chunks=MappingProxyType(chunks),
            current_transcript=transcript,
        )

    def clear_transcript(self) -> ClientSession:
        return self.update(transcript_chunks=MappingProxyType({}), current_transcript="")


class StateMirror:
    """Read-only view of the store for a UI context."""

    def __init__(self, store: SessionStateStore) -> None:
        self._store = store
        self.state = store.snapshot()
        self._unsubscribe = store.subscribe(self._on_publish)

    def _on_publish(self, snapshot: ClientSession) -> None:
        self.state = snapshot

    def resync(self) -> ClientSession:
        self.state = self._store.snapshot()
        return self.state

    def detach(self) -> None:
        self._unsubscribe()
