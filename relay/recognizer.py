from __future__ import annotations

import logging
from pathlib import Path

from common.config import RelaySettings
from common.errors import RecognizeError
from relay.process import run_process

logger = logging.getLogger(__name__)


def transcript_path_for(wav_path: Path) -> Path:
    """The whisper CLI writes <output_dir>/<input basename>.txt; output_dir is the input's directory."""
    return wav_path.with_suffix(".txt")


class Recognizer:
    """Run the whisper CLI on a normalized WAV file and return its text output."""

    def __init__(self, settings: RelaySettings) -> None:
        self.settings = settings

    def build_command(self, wav_path: Path) -> list[str]:
        return [
            self.settings.whisper_bin,
            "--model", self.settings.whisper_model,
            "--language", self.settings.language,
            "--output_format", "txt",
            "--output_dir", str(wav_path.parent),
            str(wav_path),
        ]

    async def recognize(self, wav_path: Path) -> str:
        try:
            result = await run_process(self.build_command(wav_path), timeout=self.settings.recognize_timeout_s)
        except OSError as exc:
            raise RecognizeError(self.settings.whisper_bin, f"failed to start: {exc}") from exc

        if result.stdout.strip():
            logger.debug("whisper output: %s", result.stdout.strip())
        if result.returncode != 0:
            logger.error("whisper stderr for %s: %s", wav_path.name, result.stderr.strip())
            raise RecognizeError(
                self.settings.whisper_bin,
                f"exited with code {result.returncode}",
                returncode=result.returncode,
                stderr=result.stderr,
            )

        txt_path = transcript_path_for(wav_path)
        if not txt_path.exists():
            # zero exit without an artifact is a tool bug; abort this chunk, no retry
            logger.error("No transcription file generated at: %s", txt_path)
            raise RecognizeError(self.settings.whisper_bin, f"no transcript at {txt_path.name}", returncode=0)
        try:
            return txt_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            logger.error("Unreadable transcription file %s: %s", txt_path, exc)
            raise RecognizeError(self.settings.whisper_bin, f"unreadable transcript at {txt_path.name}", returncode=0) from exc
