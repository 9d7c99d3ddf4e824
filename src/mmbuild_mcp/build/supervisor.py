"""Bounded supervision of a launched validator.

The timeout covers the validator process itself; its merged output is
drained concurrently. Once it exits, anything left in its process group is
killed and the remaining output is drained for a short grace period only,
so a background child holding the pipe open cannot stall the build. On
timeout the process (and its container) is force-killed and the partial
output is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum

from .launcher import ProcessHandle

logger = logging.getLogger(__name__)

# Output buffer limits (security: prevent DoS)
MAX_OUTPUT_BYTES: int = 5_000_000  # 5MB total
MAX_OUTPUT_LINE: int = 10_000  # 10KB per line
READ_CHUNK: int = 65_536

# How long to wait for the OS to reap a killed process
REAP_TIMEOUT: float = 5.0

# How long to keep reading output after the validator exited
DRAIN_GRACE: float = 2.0


class OutcomeKind(str, Enum):
    """How supervision ended."""

    EXITED = "exited"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Outcome:
    """Result of waiting on a validator process."""

    kind: OutcomeKind
    exit_code: int | None = None
    console: str = ""
    duration_ms: float = 0.0

    @property
    def timed_out(self) -> bool:
        return self.kind == OutcomeKind.TIMED_OUT


async def _drain(
    stream: asyncio.StreamReader | None,
    chunks: deque[bytes],
    byte_counter: list[int],
) -> None:
    """Read a stream to EOF, keeping only the newest MAX_OUTPUT_BYTES."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        chunks.append(chunk)
        byte_counter[0] += len(chunk)
        # Drop old output if buffer too large
        while byte_counter[0] > MAX_OUTPUT_BYTES and len(chunks) > 1:
            byte_counter[0] -= len(chunks.popleft())


def _decode(chunks: deque[bytes]) -> str:
    """Decode captured output and truncate overlong lines."""
    text = b"".join(chunks).decode("utf-8", errors="replace")
    lines = text.splitlines(keepends=True)
    if not any(len(line) > MAX_OUTPUT_LINE for line in lines):
        return text
    return "".join(
        line[:MAX_OUTPUT_LINE] + "...[truncated]\n" if len(line) > MAX_OUTPUT_LINE else line
        for line in lines
    )


async def _reap(process: asyncio.subprocess.Process) -> None:
    try:
        await asyncio.wait_for(process.wait(), timeout=REAP_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning(f"Killed process {getattr(process, 'pid', None)} was not reaped")


async def _finish_drain(drain: asyncio.Future[None]) -> None:
    """Give the output reader a bounded amount of time to reach EOF."""
    try:
        await asyncio.wait_for(drain, timeout=DRAIN_GRACE)
    except asyncio.TimeoutError:
        logger.debug("Output still open after validator exit, keeping what was read")


async def wait_with_timeout(handle: ProcessHandle, timeout: float) -> Outcome:
    """Wait for the validator to exit, killing it after ``timeout`` seconds.

    Args:
        handle: Launched validator
        timeout: Timeout in seconds

    Returns:
        EXITED outcome with exit code and console text, or TIMED_OUT

    Raises:
        asyncio.CancelledError: If the caller is cancelled (process is killed
            and reaped first)
    """
    process = handle.process
    chunks: deque[bytes] = deque()
    byte_counter = [0]
    start_time = time.perf_counter()
    drain = asyncio.ensure_future(_drain(process.stdout, chunks, byte_counter))

    try:
        exit_code = await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Validator timeout after {timeout}s (pid {handle.pid})")
        await handle.kill()
        await _reap(process)
        drain.cancel()
        return Outcome(
            kind=OutcomeKind.TIMED_OUT,
            duration_ms=(time.perf_counter() - start_time) * 1000,
        )
    except asyncio.CancelledError:
        logger.warning(f"Supervision cancelled, killing validator (pid {handle.pid})")
        drain.cancel()
        await asyncio.shield(handle.kill())
        await asyncio.shield(_reap(process))
        raise

    # Children left behind must not keep writing into the workspace
    handle.kill_process_group()
    await _finish_drain(drain)

    duration = (time.perf_counter() - start_time) * 1000
    logger.info(f"Validator exited with code {exit_code} after {duration:.0f}ms")
    return Outcome(
        kind=OutcomeKind.EXITED,
        exit_code=exit_code,
        console=_decode(chunks),
        duration_ms=duration,
    )
