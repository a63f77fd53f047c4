import tempfile
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class RelaySettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3000
    websocket_path: str = "/websocket"
    log_level: str = "info"
    cors_origins: list[str] = ["*"]
    max_sessions: int = 10

    # Chunk validation
    min_chunk_bytes: int = 100
    signature_search_bytes: int = 50

    # Temp artifacts live here for the duration of one ingest cycle
    work_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "tab-relay")
    max_concurrent_cycles: int = 4

    # Transcoder
    ffmpeg_bin: str = "ffmpeg"
    container_format: str = "webm"
    input_codec: str = "opus"
    transcode_timeout_s: float = 30.0

    # Recognizer
    whisper_bin: str = "whisper"
    whisper_model: str = "tiny"
    language: str = "en"
    recognize_timeout_s: float = 120.0

    model_config = {"env_prefix": "RELAY_"}


class ClientSettings(BaseSettings):
    server_url: str = "ws://localhost:3000/websocket"
    client_id: str = "tab-capture-client"
    max_reconnect_attempts: int = 5
    reconnect_delay_s: float = 1.0

    model_config = {"env_prefix": "CLIENT_"}


class HostedAPISettings(BaseSettings):
    base_url: str = "https://api.assemblyai.com"
    api_key: str = ""
    language_code: str = "en"
    poll_interval_s: float = 1.0
    poll_timeout_s: float = 600.0
    request_timeout_s: float = 60.0
    summary_model: str = "default"

    model_config = {"env_prefix": "ASSEMBLYAI_"}
