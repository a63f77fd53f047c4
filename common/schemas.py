from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- WebSocket messages: relay -> client ---

class ServerMessageType(str, Enum):
    connection = "connection"
    status = "status"
    transcript = "transcript"
    error = "error"


class ConnectionMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.connection
    status: str = "connected"
    timestamp: datetime = Field(default_factory=_utcnow)


class StatusMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.status
    status: str
    timestamp: datetime = Field(default_factory=_utcnow)


class TranscriptMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: ServerMessageType = ServerMessageType.transcript
    text: str
    chunk_id: int = Field(alias="chunkId")
    # arrival time of the chunk this transcript was produced from
    timestamp: datetime


class ErrorMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: ServerMessageType = ServerMessageType.error
    error: str
    chunk_id: Optional[int] = Field(default=None, alias="chunkId")


# --- WebSocket messages: client -> relay ---

class ClientMessageType(str, Enum):
    initialize = "initialize"


class InitializeMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: ClientMessageType = ClientMessageType.initialize
    client_id: str = Field(alias="clientId")
    timestamp: datetime = Field(default_factory=_utcnow)


def to_frame(message: BaseModel) -> str:
    """Serialize a wire message using its on-the-wire field names."""
    return message.model_dump_json(by_alias=True, exclude_none=True)


# --- Notifications fanned out by the streaming client ---

class NotificationType(str, Enum):
    status = "status"
    transcript_ready = "transcriptReady"
    error = "error"


class Notification(BaseModel):
    type: NotificationType
    detail: Optional[str] = None
    chunk_id: Optional[int] = None
    text: Optional[str] = None
    timestamp: Optional[datetime] = None


# --- Hosted transcription API ---

class TranscriptStatus(str, Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    error = "error"


class TranscriptJob(BaseModel):
    id: str
    status: TranscriptStatus
    text: Optional[str] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in (TranscriptStatus.completed, TranscriptStatus.error)
