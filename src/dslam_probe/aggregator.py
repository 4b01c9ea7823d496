"""
Roll-ups computed from device status.

Parent-node status is derived from member devices and written back to the
store. Department, region and quality summaries are read-only views
computed on demand.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from ._types import (
    FamilyCounts,
    FinalStatistics,
    GroupCounts,
    GroupSummary,
    NetworkQuality,
    now_utc,
    percent,
)
from .store import DeviceStore

logger = logging.getLogger(__name__)

UNASSIGNED = "unassigned"


def _round_ms(value: Optional[float]) -> Optional[int]:
    return int(value + 0.5) if value is not None else None


def _summarize(
    groups: list[GroupCounts],
    families: Optional[dict[Optional[str], FamilyCounts]] = None,
) -> dict[str, GroupSummary]:
    families = families or {}
    summary = {}
    for group in groups:
        key = group.group_key or UNASSIGNED
        family = families.get(group.group_key) or FamilyCounts(group.group_key)
        summary[key] = GroupSummary(
            group_key=key,
            count=group.total,
            reachable_count=group.reachable,
            reachability_rate=percent(group.reachable, group.total),
            average_score=round(group.average_score, 1) if group.average_score is not None else None,
            udp_reachable=family.udp_reachable,
            average_response_time_ms=_round_ms(family.average_response_time_ms),
        )
    return summary


class Aggregator:
    """Parent-node roll-up and population statistics over a DeviceStore."""

    def __init__(self, store: DeviceStore):
        self.store = store

    def refresh_parent_nodes(self, parent_ids: Optional[Iterable[str]] = None) -> int:
        """
        Recompute functional flag and rate of parent nodes from their members.

        A parent node is functional when at least one member is. Running it
        twice without intervening changes yields the same state.

        Args:
            parent_ids: Nodes to refresh (None = every node with members)

        Returns:
            Number of parent nodes updated
        """
        counts = self.store.parent_member_counts(parent_ids)
        aggregated_at = now_utc()
        updated = 0

        for parent_id, members in counts.items():
            if members.total == 0:
                continue
            functional = members.reachable > 0
            rate = percent(members.reachable, members.total)
            if self.store.update_parent_node_status(
                parent_id,
                functional=functional,
                functional_rate=rate,
                device_count=members.total,
                aggregated_at=aggregated_at,
            ):
                updated += 1
            logger.debug(
                f"Parent node {parent_id}: {members.reachable}/{members.total} functional ({rate}%)"
            )

        return updated

    def department_summary(self) -> dict[str, GroupSummary]:
        return _summarize(
            self.store.aggregate_group_by("department", tested_only=True),
            self.store.family_counts("department"),
        )

    def region_summary(self) -> dict[str, GroupSummary]:
        return _summarize(
            self.store.aggregate_group_by("region", tested_only=True),
            self.store.family_counts("region"),
        )

    def quality_breakdown(self) -> dict[str, int]:
        """Tested devices per quality tier; unavailable is everything not reachable."""
        groups = self.store.aggregate_group_by("last_quality", tested_only=True)
        by_quality = {g.group_key: g.total for g in groups}
        total = sum(g.total for g in groups)
        reachable = sum(g.reachable for g in groups)

        return {
            NetworkQuality.EXCELLENT.value: by_quality.get(NetworkQuality.EXCELLENT.value, 0),
            NetworkQuality.GOOD.value: by_quality.get(NetworkQuality.GOOD.value, 0),
            NetworkQuality.POOR.value: by_quality.get(NetworkQuality.POOR.value, 0),
            NetworkQuality.UNAVAILABLE.value: total - reachable,
        }

    def final_statistics(self) -> FinalStatistics:
        groups = self.store.aggregate_group_by("last_quality", tested_only=True)
        total = sum(g.total for g in groups)
        reachable = sum(g.reachable for g in groups)

        scored = [(g.average_score, g.total) for g in groups if g.average_score is not None]
        weight = sum(n for _, n in scored)
        average = round(sum(avg * n for avg, n in scored) / weight, 1) if weight else None
        overall = self.store.family_counts().get(None) or FamilyCounts(None)

        stats = FinalStatistics(
            total_tested=total,
            total_reachable=reachable,
            global_reachability_rate=percent(reachable, total),
            average_score=average,
            ipv4_only=overall.ipv4_only,
            ipv6_only=overall.ipv6_only,
            both=overall.both,
            udp_reachable=overall.udp_reachable,
            average_response_time_ms=_round_ms(overall.average_response_time_ms),
            quality_breakdown=self.quality_breakdown(),
            department_summary=self.department_summary(),
            region_summary=self.region_summary(),
        )

        logger.info(
            f"Final statistics: {reachable}/{total} reachable "
            f"({stats.global_reachability_rate}%), average score {average}"
            f", average response {stats.average_response_time_ms} ms"
        )
        return stats

    def problem_areas(self, limit: int = 20) -> list[dict]:
        """Sites with the most non-functional devices."""
        return self.store.non_functional_sites(limit)
