from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from common.errors import ProcessTimeout

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str


async def run_process(args: list[str], timeout: float | None = None) -> ProcessResult:
    """Run an external tool to completion and capture its output.

    Raises OSError if the executable cannot be started and ProcessTimeout if it
    outlives ``timeout``; in that case the process is killed before raising.
    """
    logger.debug("Spawning: %s", " ".join(args))
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise ProcessTimeout(args[0], timeout or 0.0) from exc

    return ProcessResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
