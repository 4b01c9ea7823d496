"""Connectivity score and quality tier."""

from __future__ import annotations

from typing import Optional

from ._types import ConnectivityTestResult, NetworkQuality

PING_POINTS = 30
UDP_POINTS = 40
IPV6_POINTS = 30


def _timing_adjustment(response_time_ms: Optional[float]) -> int:
    if response_time_ms is None:
        return 0
    if response_time_ms < 50:
        return 5
    if response_time_ms < 100:
        return 2
    if response_time_ms > 1000:
        return -5
    return 0


def connectivity_score(
    ipv4_ping: bool,
    ipv4_udp: bool,
    ipv6: bool,
    response_time_ms: Optional[float] = None,
) -> int:
    """Score in [0, 100] from probe flags and the fastest response time."""
    score = 0
    if ipv4_ping:
        score += PING_POINTS
    if ipv4_udp:
        score += UDP_POINTS
    if ipv6:
        score += IPV6_POINTS
    score += _timing_adjustment(response_time_ms)
    return max(0, min(100, score))


def network_quality(score: int, is_reachable: bool) -> NetworkQuality:
    if not is_reachable:
        return NetworkQuality.UNAVAILABLE
    if score >= 80:
        return NetworkQuality.EXCELLENT
    if score >= 60:
        return NetworkQuality.GOOD
    return NetworkQuality.POOR


def score_result(result: ConnectivityTestResult) -> ConnectivityTestResult:
    """Fill score and quality of a result from its probe flags."""
    result.score = connectivity_score(
        result.ipv4_ping_reachable,
        result.ipv4_udp_reachable,
        result.ipv6_reachable,
        result.response_time_ms,
    )
    result.quality = network_quality(result.score, result.is_reachable)
    return result
