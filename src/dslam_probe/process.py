"""
Process execution for network probes.

Probe tools (ping, nc) run as child processes under a hard kill deadline
that is enforced here, independently of whatever timeout flag the tool
itself was given. A child is always killed and reaped before control
leaves probe_process, whether the probe completed, timed out, was
cancelled or failed to start.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class ProcessOutcome:
    """Result of one probe process."""
    exit_code: Optional[int]
    stdout: str = ""
    duration_ms: float = 0.0
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None


# Signature shared by spawn_probe and test doubles
ProbeRunner = Callable[[str, Sequence[str], float], Awaitable[ProcessOutcome]]


@asynccontextmanager
async def probe_process(command: str, args: Sequence[str]) -> AsyncIterator[asyncio.subprocess.Process]:
    """Start a probe process and guarantee it is gone on exit."""
    process = await asyncio.create_subprocess_exec(
        command,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        yield process
    finally:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()


async def spawn_probe(command: str, args: Sequence[str], hard_timeout: float) -> ProcessOutcome:
    """
    Run a probe command under a hard deadline.

    Args:
        command: Executable name or path
        args: Command arguments
        hard_timeout: Seconds before the process is killed

    Returns:
        ProcessOutcome. Spawn errors and timeouts are reported in the
        outcome, never raised. Cancellation still propagates.
    """
    started = time.monotonic()

    try:
        async with probe_process(command, args) as process:
            try:
                stdout, _ = await asyncio.wait_for(process.communicate(), timeout=hard_timeout)
            except asyncio.TimeoutError:
                duration = (time.monotonic() - started) * 1000
                logger.debug(f"{command} killed after {hard_timeout}s deadline")
                return ProcessOutcome(
                    exit_code=None,
                    duration_ms=duration,
                    timed_out=True,
                    error=f"killed after {hard_timeout}s",
                )
            exit_code = process.returncode
    except OSError as e:
        duration = (time.monotonic() - started) * 1000
        logger.debug(f"Failed to start {command}: {e}")
        return ProcessOutcome(exit_code=None, duration_ms=duration, error=str(e))

    duration = (time.monotonic() - started) * 1000
    return ProcessOutcome(
        exit_code=exit_code,
        stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
        duration_ms=duration,
    )
