"""
Per-device connectivity test.

For one device the prober runs up to three probes concurrently: ICMP and
UDP against the IPv4 address, ICMP against the IPv6 address. There is no
port-based check on IPv6.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ._types import ConnectivityTestResult, DeviceRecord, ProbeResult, now_utc
from .config import EngineConfig
from .probes import icmp_probe, is_absent_address, udp_probe
from .process import ProbeRunner, spawn_probe
from .scoring import score_result

logger = logging.getLogger(__name__)


def _as_probe_result(value) -> ProbeResult:
    """Exceptions escaping a probe count as a failed probe."""
    if isinstance(value, ProbeResult):
        return value
    return ProbeResult.failed(f"{type(value).__name__}: {value}")


class DeviceProber:
    """Runs the IPv4/IPv6 probe set against one device at a time."""

    def __init__(self, config: Optional[EngineConfig] = None, runner: ProbeRunner = spawn_probe):
        self.config = config or EngineConfig()
        self.runner = runner

    async def _ping(self, address: Optional[str], ipv6: bool) -> ProbeResult:
        return await icmp_probe(
            address,
            ipv6=ipv6,
            runner=self.runner,
            command=self.config.ping_command,
            timeout=self.config.ping_timeout_s,
            hard_timeout=self.config.hard_timeout_s,
            success_markers=self.config.ping_success_markers,
            absent_markers=self.config.absent_markers,
        )

    async def _udp(self, address: Optional[str]) -> ProbeResult:
        return await udp_probe(
            address,
            port=self.config.udp_port,
            runner=self.runner,
            command=self.config.nc_command,
            timeout=self.config.udp_timeout_s,
            hard_timeout=self.config.hard_timeout_s,
            absent_markers=self.config.absent_markers,
        )

    async def test_device_connectivity(self, device: DeviceRecord) -> ConnectivityTestResult:
        """
        Probe a device and return its scored result.

        Absent addresses dispatch nothing and leave their flags false.
        A failing probe never aborts its siblings.
        """
        result = ConnectivityTestResult(
            device_id=device.device_id,
            parent_id=device.parent_id,
            tested_at=now_utc(),
        )

        has_v4 = not is_absent_address(device.ipv4, self.config.absent_markers)
        has_v6 = not is_absent_address(device.ipv6, self.config.absent_markers)

        probes = []
        if has_v4:
            probes.append(self._ping(device.ipv4, ipv6=False))
            probes.append(self._udp(device.ipv4))
        if has_v6:
            probes.append(self._ping(device.ipv6, ipv6=True))

        if not probes:
            logger.debug(f"{device.device_id}: no usable address, skipping probes")
            return score_result(result)

        outcomes = [_as_probe_result(o) for o in await asyncio.gather(*probes, return_exceptions=True)]

        successes: list[ProbeResult] = []
        details: list[str] = []
        index = 0
        if has_v4:
            ping4, udp4 = outcomes[0], outcomes[1]
            index = 2
            result.ipv4_ping_reachable = ping4.success
            result.ipv4_udp_reachable = udp4.success
            result.ipv4_reachable = ping4.success or udp4.success
            for name, outcome in (("ping4", ping4), ("udp4", udp4)):
                if outcome.success:
                    successes.append(outcome)
                elif outcome.detail:
                    details.append(f"{name}: {outcome.detail}")
        if has_v6:
            ping6 = outcomes[index]
            result.ipv6_reachable = ping6.success
            if ping6.success:
                successes.append(ping6)
            elif ping6.detail:
                details.append(f"ping6: {ping6.detail}")

        result.is_reachable = result.ipv4_reachable or result.ipv6_reachable
        times = [p.response_time_ms for p in successes if p.response_time_ms is not None]
        result.response_time_ms = min(times) if times else None
        if not result.is_reachable and details:
            result.error_details = "; ".join(details)

        score_result(result)
        logger.debug(
            f"{device.device_id}: reachable={result.is_reachable} "
            f"score={result.score} quality={result.quality.value}"
        )
        return result
