import asyncio
import json
import stat
import sys
from pathlib import Path

import pytest

from common.config import RelaySettings
from common.errors import ProcessTimeout, RecognizeError, TranscodeError
from common.schemas import ErrorMessage, ServerMessageType, TranscriptMessage
from relay.audio_utils import Transcoder, build_transcode_command
from relay.pipeline import IngestPipeline, TempArtifacts
from relay.recognizer import Recognizer, transcript_path_for
from relay.session import SessionRegistry
from relay.validator import WEBM_MAGIC, ChunkVerdict, validate_chunk
from fakes import VALID_CHUNK, FakeRecognizer, FakeTranscoder, GatedTranscoder

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake tools are POSIX shell scripts")


def _script(directory: Path, name: str, body: str) -> Path:
    path = directory / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class TestValidator:
    def test_short_buffer_is_too_small(self):
        assert validate_chunk(b"\x00" * 50) is ChunkVerdict.too_small

    def test_short_buffer_with_magic_is_still_too_small(self):
        assert validate_chunk(WEBM_MAGIC + b"\x00" * 10) is ChunkVerdict.too_small

    def test_magic_at_start_is_accepted(self):
        assert validate_chunk(VALID_CHUNK) is ChunkVerdict.accepted

    def test_magic_inside_window_is_accepted(self):
        data = b"\x00" * 46 + WEBM_MAGIC + b"\x00" * 100
        assert validate_chunk(data) is ChunkVerdict.accepted

    def test_magic_crossing_window_edge_is_rejected(self):
        data = b"\x00" * 47 + WEBM_MAGIC + b"\x00" * 100
        assert validate_chunk(data) is ChunkVerdict.invalid_format

    def test_missing_magic_is_invalid_format(self):
        assert validate_chunk(b"\x01" * 500) is ChunkVerdict.invalid_format


class TestTranscodeCommand:
    def test_fixed_option_set(self):
        settings = RelaySettings()
        cmd = build_transcode_command(Path("in.webm"), Path("out.wav"), settings)
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") - 4 : cmd.index("-i")] == ["-f", "webm", "-acodec", "opus"]
        assert cmd[cmd.index("-i") + 1] == "in.webm"
        tail = cmd[cmd.index("-i") + 2 :]
        assert tail == ["-ac", "1", "-ar", "16000", "-acodec", "pcm_s16le", "-f", "wav", "out.wav"]

    def test_recognizer_command_and_output_path(self):
        recognizer = Recognizer(RelaySettings())
        wav = Path("/work/chunk_1_abc.wav")
        assert recognizer.build_command(wav) == [
            "whisper",
            "--model", "tiny",
            "--language", "en",
            "--output_format", "txt",
            "--output_dir", "/work",
            "/work/chunk_1_abc.wav",
        ]
        assert transcript_path_for(wav) == Path("/work/chunk_1_abc.txt")


class TestSessionRegistry:
    @pytest.fixture
    def registry(self):
        return SessionRegistry(max_sessions=2)

    @pytest.mark.asyncio
    async def test_add_and_remove(self, registry):
        conn = await registry.add(None)
        assert conn in registry
        assert registry.active_count == 1
        await registry.remove(conn)
        assert conn not in registry
        assert registry.active_count == 0

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, registry):
        conn = await registry.add(None)
        await registry.remove(conn)
        await registry.remove(conn)
        assert registry.active_count == 0

    @pytest.mark.asyncio
    async def test_max_sessions_enforced(self, registry):
        await registry.add(None)
        await registry.add(None)
        with pytest.raises(RuntimeError, match="Max sessions"):
            await registry.add(None)


@posix_only
class TestExternalTools:
    @pytest.mark.asyncio
    async def test_transcode_success(self, tmp_path):
        ffmpeg = _script(tmp_path, "ffmpeg", 'for arg; do out="$arg"; done\nprintf RIFF > "$out"\n')
        transcoder = Transcoder(RelaySettings(ffmpeg_bin=str(ffmpeg), work_dir=tmp_path))
        src = tmp_path / "in.webm"
        src.write_bytes(VALID_CHUNK)
        out = await transcoder.transcode(src, tmp_path / "out.wav")
        assert out.read_bytes() == b"RIFF"

    @pytest.mark.asyncio
    async def test_transcode_nonzero_exit(self, tmp_path):
        ffmpeg = _script(tmp_path, "ffmpeg", 'echo "Invalid data found" >&2\nexit 1\n')
        transcoder = Transcoder(RelaySettings(ffmpeg_bin=str(ffmpeg), work_dir=tmp_path))
        with pytest.raises(TranscodeError) as info:
            await transcoder.transcode(tmp_path / "in.webm", tmp_path / "out.wav")
        assert info.value.returncode == 1
        assert "Invalid data found" in info.value.stderr

    @pytest.mark.asyncio
    async def test_transcode_missing_output(self, tmp_path):
        ffmpeg = _script(tmp_path, "ffmpeg", "exit 0\n")
        transcoder = Transcoder(RelaySettings(ffmpeg_bin=str(ffmpeg), work_dir=tmp_path))
        with pytest.raises(TranscodeError, match="no output"):
            await transcoder.transcode(tmp_path / "in.webm", tmp_path / "out.wav")

    @pytest.mark.asyncio
    async def test_transcoder_not_installed(self, tmp_path):
        transcoder = Transcoder(RelaySettings(ffmpeg_bin=str(tmp_path / "missing"), work_dir=tmp_path))
        with pytest.raises(TranscodeError, match="failed to start"):
            await transcoder.transcode(tmp_path / "in.webm", tmp_path / "out.wav")

    @pytest.mark.asyncio
    async def test_transcode_timeout_kills_process(self, tmp_path):
        ffmpeg = _script(tmp_path, "ffmpeg", "exec sleep 5\n")
        settings = RelaySettings(ffmpeg_bin=str(ffmpeg), work_dir=tmp_path, transcode_timeout_s=0.2)
        with pytest.raises(ProcessTimeout):
            await Transcoder(settings).transcode(tmp_path / "in.webm", tmp_path / "out.wav")

    @pytest.mark.asyncio
    async def test_recognize_reads_text_artifact(self, tmp_path):
        whisper = _script(tmp_path, "whisper", 'printf "  hello from the tab  \\n" > "$8/$(basename "$9" .wav).txt"\n')
        recognizer = Recognizer(RelaySettings(whisper_bin=str(whisper), work_dir=tmp_path))
        wav = tmp_path / "chunk.wav"
        wav.write_bytes(b"RIFF")
        text = await recognizer.recognize(wav)
        assert text.strip() == "hello from the tab"

    @pytest.mark.asyncio
    async def test_recognize_zero_exit_without_artifact(self, tmp_path):
        whisper = _script(tmp_path, "whisper", "exit 0\n")
        recognizer = Recognizer(RelaySettings(whisper_bin=str(whisper), work_dir=tmp_path))
        with pytest.raises(RecognizeError, match="no transcript"):
            await recognizer.recognize(tmp_path / "chunk.wav")

    @pytest.mark.asyncio
    async def test_recognize_nonzero_exit(self, tmp_path):
        whisper = _script(tmp_path, "whisper", "exit 3\n")
        recognizer = Recognizer(RelaySettings(whisper_bin=str(whisper), work_dir=tmp_path))
        with pytest.raises(RecognizeError) as info:
            await recognizer.recognize(tmp_path / "chunk.wav")
        assert info.value.returncode == 3

    @pytest.mark.asyncio
    async def test_full_cycle_with_real_processes(self, tmp_path):
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        ffmpeg = _script(bin_dir, "ffmpeg", 'for arg; do out="$arg"; done\nprintf RIFF > "$out"\n')
        whisper = _script(bin_dir, "whisper", 'printf "  hello from the tab  \\n" > "$8/$(basename "$9" .wav).txt"\n')
        work_dir = tmp_path / "work"
        pipeline = IngestPipeline(RelaySettings(ffmpeg_bin=str(ffmpeg), whisper_bin=str(whisper), work_dir=work_dir))
        sent = []

        async def deliver(message):
            sent.append(message)

        await pipeline.process(VALID_CHUNK, deliver)
        assert [m.text for m in sent] == ["hello from the tab"]
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_undecodable_artifact_becomes_error_frame(self, tmp_path):
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        ffmpeg = _script(bin_dir, "ffmpeg", 'for arg; do out="$arg"; done\nprintf RIFF > "$out"\n')
        whisper = _script(bin_dir, "whisper", 'printf "\\377\\376bad" > "$8/$(basename "$9" .wav).txt"\n')
        work_dir = tmp_path / "work"
        pipeline = IngestPipeline(RelaySettings(ffmpeg_bin=str(ffmpeg), whisper_bin=str(whisper), work_dir=work_dir))
        sent = []

        async def deliver(message):
            sent.append(message)

        await pipeline.process(VALID_CHUNK, deliver)
        assert len(sent) == 1
        assert isinstance(sent[0], ErrorMessage)
        assert sent[0].error == "Failed to transcribe audio chunk"
        assert list(work_dir.iterdir()) == []


class TestIngestPipeline:
    @pytest.fixture
    def work_dir(self, tmp_path):
        return tmp_path / "work"

    @pytest.fixture
    def sent(self):
        return []

    @pytest.fixture
    def deliver(self, sent):
        async def _deliver(message):
            sent.append(message)

        return _deliver

    def _pipeline(self, work_dir, transcoder=None, recognizer=None, **overrides):
        settings = RelaySettings(work_dir=work_dir, **overrides)
        return IngestPipeline(settings, transcoder=transcoder or FakeTranscoder(), recognizer=recognizer or FakeRecognizer())

    @pytest.mark.asyncio
    async def test_small_chunk_dropped_silently(self, work_dir, sent, deliver):
        transcoder, recognizer = FakeTranscoder(), FakeRecognizer()
        pipeline = self._pipeline(work_dir, transcoder, recognizer)
        result = await pipeline.process(b"\x00" * 50, deliver)
        assert result is None
        assert sent == []
        assert transcoder.calls == [] and recognizer.calls == []
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_bad_signature_sends_error(self, work_dir, sent, deliver):
        transcoder = FakeTranscoder()
        pipeline = self._pipeline(work_dir, transcoder)
        await pipeline.process(b"\x01" * 500, deliver)
        assert len(sent) == 1
        assert isinstance(sent[0], ErrorMessage)
        assert sent[0].error == "Invalid audio format"
        assert transcoder.calls == []
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_valid_chunk_produces_transcript(self, work_dir, sent, deliver):
        transcoder, recognizer = FakeTranscoder(), FakeRecognizer()
        pipeline = self._pipeline(work_dir, transcoder, recognizer)
        await pipeline.process(VALID_CHUNK, deliver)
        assert len(transcoder.calls) == 1
        assert len(recognizer.calls) == 1
        assert len(sent) == 1
        message = sent[0]
        assert isinstance(message, TranscriptMessage)
        assert message.type is ServerMessageType.transcript
        assert message.text == "hello world"
        assert message.chunk_id >= 1
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_transcode_failure_cleans_up(self, work_dir, sent, deliver):
        recognizer = FakeRecognizer()
        pipeline = self._pipeline(work_dir, FakeTranscoder(fail=True), recognizer)
        await pipeline.process(VALID_CHUNK, deliver)
        assert len(sent) == 1
        assert sent[0].error == "Failed to transcode audio chunk"
        # stderr is never forwarded to the client
        assert "Invalid data" not in sent[0].error
        assert recognizer.calls == []
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_recognize_failure_cleans_up(self, work_dir, sent, deliver):
        pipeline = self._pipeline(work_dir, recognizer=FakeRecognizer(fail=True))
        await pipeline.process(VALID_CHUNK, deliver)
        assert sent[0].error == "Failed to transcribe audio chunk"
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_sends_error_and_cleans_up(self, work_dir, sent, deliver):
        class ExplodingRecognizer(FakeRecognizer):
            async def recognize(self, wav_path):
                await super().recognize(wav_path)
                raise ValueError("boom")

        pipeline = self._pipeline(work_dir, recognizer=ExplodingRecognizer())
        result = await pipeline.process(VALID_CHUNK, deliver)
        assert sent == [result]
        assert isinstance(result, ErrorMessage)
        assert result.error == "Failed to process audio chunk"
        assert result.chunk_id is not None
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_blank_transcript_sends_empty_frame(self, work_dir, sent, deliver):
        pipeline = self._pipeline(work_dir, recognizer=FakeRecognizer(text=" \n"))
        result = await pipeline.process(VALID_CHUNK, deliver)
        assert sent == [result]
        assert isinstance(result, TranscriptMessage)
        assert result.text == ""
        assert list(work_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_chunk_ids_increase(self, work_dir, sent, deliver):
        pipeline = self._pipeline(work_dir)
        await pipeline.process(VALID_CHUNK, deliver)
        await pipeline.process(b"\x01" * 500, deliver)
        await pipeline.process(VALID_CHUNK, deliver)
        ids = [m.chunk_id for m in sent]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3

    @pytest.mark.asyncio
    async def test_admission_limits_concurrent_cycles(self, work_dir, sent, deliver):
        transcoder = GatedTranscoder()
        pipeline = self._pipeline(work_dir, transcoder, max_concurrent_cycles=2)
        await asyncio.gather(*(pipeline.process(VALID_CHUNK, deliver) for _ in range(5)))
        assert transcoder.peak == 2
        assert len(transcoder.calls) == 5
        assert len(sent) == 5

    @pytest.mark.asyncio
    async def test_interleaved_chunks_do_not_collide(self, work_dir, sent, deliver):
        transcoder, recognizer = GatedTranscoder(), FakeRecognizer()
        pipeline = self._pipeline(work_dir, transcoder, recognizer)
        await asyncio.gather(*(pipeline.process(VALID_CHUNK, deliver, "conn-1") for _ in range(4)))
        assert len(set(transcoder.calls)) == 4
        assert len(set(recognizer.calls)) == 4
        assert all(isinstance(m, TranscriptMessage) for m in sent)
        assert len({m.chunk_id for m in sent}) == 4
        assert list(work_dir.iterdir()) == []

    def test_temp_artifacts_are_unique(self, work_dir):
        a = TempArtifacts.for_chunk(work_dir, 1, "webm")
        b = TempArtifacts.for_chunk(work_dir, 1, "webm")
        assert a.raw_path != b.raw_path
        assert a.raw_path.suffix == ".webm"
        assert a.txt_path == a.wav_path.with_suffix(".txt")


class TestWireFrames:
    def test_transcript_frame_uses_wire_names(self):
        from datetime import datetime, timezone

        from common.schemas import to_frame

        frame = json.loads(to_frame(TranscriptMessage(
            text="hi", chunk_id=4, timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )))
        assert frame == {"type": "transcript", "text": "hi", "chunkId": 4, "timestamp": "2026-01-01T00:00:00Z"}

    def test_error_frame_omits_missing_chunk_id(self):
        from common.schemas import to_frame

        assert json.loads(to_frame(ErrorMessage(error="Max sessions (1) reached"))) == {
            "type": "error",
            "error": "Max sessions (1) reached",
        }
