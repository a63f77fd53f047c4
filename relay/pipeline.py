from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol, Union

from common.config import RelaySettings
from common.errors import InvalidFormat, PipelineError
from common.schemas import ErrorMessage, TranscriptMessage
from relay.audio_utils import Transcoder
from relay.recognizer import Recognizer, transcript_path_for
from relay.validator import ChunkVerdict, validate_chunk

logger = logging.getLogger(__name__)

ResultMessage = Union[TranscriptMessage, ErrorMessage]
Deliver = Callable[[ResultMessage], Awaitable[None]]


class TranscoderLike(Protocol):
    async def transcode(self, input_path: Path, output_path: Path) -> Path: ...


class RecognizerLike(Protocol):
    async def recognize(self, wav_path: Path) -> str: ...


@dataclass
class AudioChunk:
    chunk_id: int
    data: bytes
    connection_id: str = ""
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TempArtifacts:
    raw_path: Path
    wav_path: Path
    txt_path: Path

    @classmethod
    def for_chunk(cls, work_dir: Path, chunk_id: int, container_format: str) -> TempArtifacts:
        stem = f"chunk_{chunk_id}_{uuid.uuid4().hex}"
        wav_path = work_dir / f"{stem}.wav"
        return cls(
            raw_path=work_dir / f"{stem}.{container_format}",
            wav_path=wav_path,
            txt_path=transcript_path_for(wav_path),
        )

    def cleanup(self) -> None:
        for path in (self.raw_path, self.wav_path, self.txt_path):
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.exception("Cleanup error for %s", path)


class IngestPipeline:
    """Turns one binary frame above the size floor into exactly one result frame.

    Cycles for the same connection are not serialized; each one works on its
    own uniquely named artifacts. The semaphore caps how many transcoder /
    recognizer pairs run at once.
    """

    def __init__(
        self,
        settings: RelaySettings,
        transcoder: TranscoderLike | None = None,
        recognizer: RecognizerLike | None = None,
    ) -> None:
        self.settings = settings
        self.transcoder = transcoder or Transcoder(settings)
        self.recognizer = recognizer or Recognizer(settings)
        self._admission = asyncio.Semaphore(settings.max_concurrent_cycles)
        self._chunk_ids = itertools.count(1)
        self.settings.work_dir.mkdir(parents=True, exist_ok=True)

    async def process(self, data: bytes, deliver: Deliver, connection_id: str = "") -> Optional[ResultMessage]:
        verdict = validate_chunk(data, self.settings.min_chunk_bytes, self.settings.signature_search_bytes)
        if verdict is ChunkVerdict.too_small:
            logger.debug("Skipping small audio chunk (%d bytes) from %s", len(data), connection_id)
            return None

        chunk = AudioChunk(chunk_id=next(self._chunk_ids), data=data, connection_id=connection_id)
        if verdict is ChunkVerdict.invalid_format:
            logger.warning("Rejected chunk %d from %s: no container signature", chunk.chunk_id, connection_id)
            message: ResultMessage = ErrorMessage(error=InvalidFormat.public_message, chunk_id=chunk.chunk_id)
        else:
            async with self._admission:
                message = await self._run_cycle(chunk)

        await deliver(message)
        return message

    async def _run_cycle(self, chunk: AudioChunk) -> ResultMessage:
        artifacts = TempArtifacts.for_chunk(self.settings.work_dir, chunk.chunk_id, self.settings.container_format)
        try:
            artifacts.raw_path.write_bytes(chunk.data)
            await self.transcoder.transcode(artifacts.raw_path, artifacts.wav_path)
            text = await self.recognizer.recognize(artifacts.wav_path)
        except PipelineError as exc:
            logger.warning("Chunk %d failed: %s", chunk.chunk_id, exc)
            return ErrorMessage(error=exc.public_message, chunk_id=chunk.chunk_id)
        except Exception:
            logger.exception("Error processing audio chunk %d", chunk.chunk_id)
            return ErrorMessage(error=PipelineError.public_message, chunk_id=chunk.chunk_id)
        finally:
            artifacts.cleanup()

        text = text.strip()
        if text:
            logger.info("Transcription generated for chunk %d: %s", chunk.chunk_id, text)
        else:
            logger.info("Chunk %d produced no speech", chunk.chunk_id)
        return TranscriptMessage(text=text, chunk_id=chunk.chunk_id, timestamp=chunk.received_at)
