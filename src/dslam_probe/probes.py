"""
Single-address reachability probes.

icmp_probe sends one echo request with ping; udp_probe checks the
management port with nc. Neither raises: every failure mode resolves to
a ProbeResult with success=False. Addresses carrying an inventory
sentinel ("N/A", "Non trouvé", ...) are rejected without starting a
process.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from ._types import ProbeResult
from .config import DEFAULT_ABSENT_MARKERS, DEFAULT_PING_SUCCESS_MARKERS
from .process import ProbeRunner, spawn_probe

logger = logging.getLogger(__name__)

DEFAULT_HARD_TIMEOUT = 3.0
DEFAULT_TOOL_TIMEOUT = 2
MANAGEMENT_PORT = 161


def is_absent_address(value: Optional[str], absent_markers: Iterable[str] = DEFAULT_ABSENT_MARKERS) -> bool:
    """True when an inventory address field holds no usable address."""
    if value is None:
        return True
    text = value.strip()
    if not text:
        return True
    lowered = text.casefold()
    return any(lowered == marker.casefold() for marker in absent_markers)


async def icmp_probe(
    address: Optional[str],
    ipv6: bool = False,
    *,
    runner: ProbeRunner = spawn_probe,
    command: str = "ping",
    timeout: int = DEFAULT_TOOL_TIMEOUT,
    hard_timeout: float = DEFAULT_HARD_TIMEOUT,
    success_markers: Iterable[str] = DEFAULT_PING_SUCCESS_MARKERS,
    absent_markers: Iterable[str] = DEFAULT_ABSENT_MARKERS,
) -> ProbeResult:
    """
    Send a single ICMP echo request.

    Success requires exit status 0 and a reply marker in the output;
    some ping builds exit 0 without having received anything.
    """
    if is_absent_address(address, absent_markers):
        return ProbeResult.absent()

    args = ["-6"] if ipv6 else []
    args += ["-c", "1", "-W", str(timeout), "-n", address.strip()]

    try:
        outcome = await runner(command, args, hard_timeout)
    except Exception as e:
        logger.debug(f"ping {address} raised: {e}")
        return ProbeResult.failed(str(e))

    if outcome.timed_out or outcome.error:
        return ProbeResult.failed(outcome.error or "timed out")
    if outcome.exit_code != 0:
        return ProbeResult.failed(f"exit status {outcome.exit_code}")
    if not any(marker in outcome.stdout for marker in success_markers):
        return ProbeResult.failed("no echo reply in output")

    logger.debug(f"ping {address} ok in {outcome.duration_ms:.1f}ms")
    return ProbeResult.ok(outcome.duration_ms)


async def udp_probe(
    address: Optional[str],
    port: int = MANAGEMENT_PORT,
    *,
    runner: ProbeRunner = spawn_probe,
    command: str = "nc",
    timeout: int = DEFAULT_TOOL_TIMEOUT,
    hard_timeout: float = DEFAULT_HARD_TIMEOUT,
    absent_markers: Iterable[str] = DEFAULT_ABSENT_MARKERS,
) -> ProbeResult:
    """Check a UDP port with a zero-I/O nc scan. Success iff exit status 0."""
    if is_absent_address(address, absent_markers):
        return ProbeResult.absent()

    args = ["-u", "-z", f"-w{timeout}", address.strip(), str(port)]

    try:
        outcome = await runner(command, args, hard_timeout)
    except Exception as e:
        logger.debug(f"nc {address}:{port} raised: {e}")
        return ProbeResult.failed(str(e))

    if outcome.timed_out or outcome.error:
        return ProbeResult.failed(outcome.error or "timed out")
    if outcome.exit_code != 0:
        return ProbeResult.failed(f"exit status {outcome.exit_code}")

    logger.debug(f"nc {address}:{port} ok in {outcome.duration_ms:.1f}ms")
    return ProbeResult.ok(outcome.duration_ms)
