from __future__ import annotations

import logging
from pathlib import Path

from common.config import RelaySettings
from common.errors import TranscodeError
from relay.process import run_process

logger = logging.getLogger(__name__)


def build_transcode_command(input_path: Path, output_path: Path, settings: RelaySettings) -> list[str]:
    return [
        settings.ffmpeg_bin,
        "-hide_banner",
        "-loglevel", "error",
        "-y",
        "-f", settings.container_format,
        "-acodec", settings.input_codec,
        "-i", str(input_path),
        "-ac", "1",
        "-ar", "16000",
        "-acodec", "pcm_s16le",
        "-f", "wav",
        str(output_path),
    ]


class Transcoder:
    """Convert a captured container chunk to 16kHz mono 16-bit PCM WAV via ffmpeg."""

    def __init__(self, settings: RelaySettings) -> None:
        self.settings = settings

    async def transcode(self, input_path: Path, output_path: Path) -> Path:
        cmd = build_transcode_command(input_path, output_path, self.settings)
        try:
            result = await run_process(cmd, timeout=self.settings.transcode_timeout_s)
        except OSError as exc:
            raise TranscodeError(self.settings.ffmpeg_bin, f"failed to start: {exc}") from exc

        if result.returncode != 0:
            logger.error("ffmpeg stderr for %s: %s", input_path.name, result.stderr.strip())
            raise TranscodeError(
                self.settings.ffmpeg_bin,
                f"exited with code {result.returncode}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        if not output_path.exists():
            raise TranscodeError(self.settings.ffmpeg_bin, f"no output written to {output_path.name}", returncode=0)
        return output_path
