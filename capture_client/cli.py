from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from capture_client.hosted_api import HostedTranscriptionClient
from capture_client.streaming import StreamingClient
from common.config import ClientSettings, HostedAPISettings
from common.errors import ChannelUnavailable, ConnectionExhausted, HostedAPIError
from common.schemas import Notification, NotificationType

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="capture-client",
        description="Send captured audio chunks to the relay server or the hosted transcription API.",
    )
    parser.add_argument("files", nargs="+", type=Path, help="WebM/Opus chunk files, one container each")
    parser.add_argument("--server", default=None, help="relay WebSocket URL")
    parser.add_argument("--wait", type=float, default=60.0, help="seconds to wait for results")
    parser.add_argument("--hosted", action="store_true", help="use the hosted transcription API")
    parser.add_argument("--summarize", action="store_true", help="also summarize (hosted only)")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


async def stream_files(paths: list[Path], settings: ClientSettings, wait: float) -> str:
    client = StreamingClient(settings)
    done = asyncio.Event()
    received = 0

    def on_result(notification: Notification) -> None:
        nonlocal received
        if notification.chunk_id is None and notification.type is not NotificationType.error:
            return
        received += 1
        if notification.type is NotificationType.error:
            print(f"[chunk {notification.chunk_id}] error: {notification.detail}", file=sys.stderr)
        elif notification.type is NotificationType.status:
            print(f"[chunk {notification.chunk_id}] (no speech)")
        else:
            print(f"[chunk {notification.chunk_id}] {notification.text}")
        if received >= len(paths):
            done.set()

    client.on(NotificationType.transcript_ready, on_result)
    client.on(NotificationType.status, on_result)
    client.on(NotificationType.error, on_result)

    await client.start()
    try:
        for path in paths:
            await client.send_chunk(path.read_bytes())
        try:
            await asyncio.wait_for(done.wait(), timeout=wait)
        except asyncio.TimeoutError:
            # undersized chunks never produce a frame
            logger.warning("Timed out with %d of %d result(s)", received, len(paths))
    finally:
        await client.stop()
    return client.store.snapshot().current_transcript


async def transcribe_hosted(paths: list[Path], settings: HostedAPISettings, summarize: bool) -> None:
    async with HostedTranscriptionClient(settings) as api:
        for path in paths:
            job = await api.transcribe(path.read_bytes())
            print(f"[{path.name}] {job.text}")
            if summarize:
                print(f"[{path.name}] summary: {await api.summarize(job.id)}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        if args.hosted:
            asyncio.run(transcribe_hosted(args.files, HostedAPISettings(), args.summarize))
        else:
            settings = ClientSettings(server_url=args.server) if args.server else ClientSettings()
            transcript = asyncio.run(stream_files(args.files, settings, args.wait))
            print(transcript)
    except (ConnectionExhausted, ChannelUnavailable, HostedAPIError) as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
