from __future__ import annotations

import asyncio
import logging
import time

import httpx

from common.config import HostedAPISettings
from common.errors import HostedAPIError
from common.schemas import TranscriptJob, TranscriptStatus

logger = logging.getLogger(__name__)


class HostedTranscriptionClient:
    """Upload -> create job -> poll client for the hosted transcription API."""

    def __init__(
        self,
        settings: HostedAPISettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or HostedAPISettings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.base_url,
            headers={"Authorization": self.settings.api_key},
            timeout=self.settings.request_timeout_s,
            transport=transport,
        )

    async def __aenter__(self) -> HostedTranscriptionClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def upload(self, audio: bytes) -> str:
        resp = await self._client.post("/v2/upload", content=audio)
        _raise_for_status(resp, "Upload failed")
        return resp.json()["upload_url"]

    async def create_transcript(self, audio_url: str) -> str:
        payload = {"audio_url": audio_url, "language_code": self.settings.language_code}
        resp = await self._client.post("/v2/transcript", json=payload)
        _raise_for_status(resp, "Transcription request failed")
        return resp.json()["id"]

    async def get_transcript(self, transcript_id: str) -> TranscriptJob:
        resp = await self._client.get(f"/v2/transcript/{transcript_id}")
        _raise_for_status(resp, "Polling failed")
        return TranscriptJob.model_validate(resp.json())

    async def wait_for_transcript(self, transcript_id: str) -> TranscriptJob:
        deadline = time.monotonic() + self.settings.poll_timeout_s
        while True:
            await asyncio.sleep(self.settings.poll_interval_s)
            job = await self.get_transcript(transcript_id)
            if job.status is TranscriptStatus.completed:
                return job
            if job.status is TranscriptStatus.error:
                raise HostedAPIError(job.error or "Transcription failed")
            logger.info("Transcribing... (%s)", job.status.value)
            if time.monotonic() >= deadline:
                raise HostedAPIError(f"Transcript {transcript_id} not ready after {self.settings.poll_timeout_s:.0f}s")

    async def transcribe(self, audio: bytes) -> TranscriptJob:
        upload_url = await self.upload(audio)
        logger.info("Audio uploaded, starting transcription")
        transcript_id = await self.create_transcript(upload_url)
        return await self.wait_for_transcript(transcript_id)

    async def summarize(self, transcript_id: str) -> str:
        payload = {
            "transcript_ids": [transcript_id],
            "final_model": self.settings.summary_model,
        }
        resp = await self._client.post("/lemur/v3/generate/summary", json=payload)
        _raise_for_status(resp, "Summarization failed")
        return resp.json()["response"].strip()


def _raise_for_status(resp: httpx.Response, context: str) -> None:
    if resp.is_error:
        logger.error("%s (%d): %s", context, resp.status_code, resp.text)
        raise HostedAPIError(f"{context}: {resp.text}")
