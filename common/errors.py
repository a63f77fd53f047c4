"""Error taxonomy shared by the relay server and the capture client."""

from __future__ import annotations


class PipelineError(Exception):
    """A per-chunk failure. Never fatal to the connection or the server."""

    public_message = "Failed to process audio chunk"


class InvalidFormat(PipelineError):
    public_message = "Invalid audio format"


class ExternalProcessError(PipelineError):
    def __init__(self, tool: str, detail: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(f"{tool}: {detail}")
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr


class TranscodeError(ExternalProcessError):
    public_message = "Failed to transcode audio chunk"


class RecognizeError(ExternalProcessError):
    public_message = "Failed to transcribe audio chunk"


class ProcessTimeout(PipelineError):
    public_message = "Audio processing timed out"

    def __init__(self, tool: str, timeout: float) -> None:
        super().__init__(f"{tool} did not finish within {timeout:.1f}s")
        self.tool = tool
        self.timeout = timeout


class ChannelUnavailable(RuntimeError):
    """Raised when sending while the streaming channel is not open."""


class ConnectionExhausted(RuntimeError):
    """Raised once the reconnect attempt cap has been reached."""


class HostedAPIError(RuntimeError):
    pass
