"""
Type definitions for the DSLAM connectivity engine.

These dataclasses define the domain model shared by the probes, the
scheduler, the aggregator and the storage layer: inventory records for
devices (DSLAMs) and their parent nodes (NRAs), per-probe outcomes,
persisted connectivity results and the closed set of failure variants
used to report partial failures.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def now_utc() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class NetworkQuality(str, Enum):
    """Quality tier derived from score and reachability."""
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    UNAVAILABLE = "unavailable"


class ZoneType(str, Enum):
    """Zone classification of a device site."""
    URBAN = "urban"
    RURAL = "rural"
    SEMI_URBAN = "semi-urban"
    UNKNOWN = "unknown"


class FailureKind(str, Enum):
    """
    Closed failure taxonomy.

    Failures are isolated at the smallest meaningful unit:
    probe -> device -> batch/department -> run.
    """
    SENTINEL_ADDRESS = "sentinel_address"  # not an error, nothing dispatched
    PROBE_FAILURE = "probe_failure"        # timeout, spawn failure, non-zero exit
    DEVICE_FAILURE = "device_failure"      # unexpected error while probing/persisting one device
    UNIT_FAILURE = "unit_failure"          # a whole batch or department failed
    FATAL = "fatal"                        # run aborted


class UnitKind(str, Enum):
    """Kind of work unit reported in a UnitOutcome."""
    BATCH = "batch"
    DEPARTMENT = "department"


@dataclass
class DeviceRecord:
    """
    An access device (DSLAM) from the inventory.

    Address fields may hold sentinel "absent" values ("N/A", "Non trouvé",
    ...) which are never dispatched to a probe.
    """
    device_id: str
    parent_id: str = ""
    city: str = ""
    location: str = ""
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None
    install_date: str = ""
    service_date: str = ""

    # Geography
    department: str = ""
    region: str = ""
    zone: ZoneType = ZoneType.UNKNOWN
    postal_code: Optional[str] = None
    population: Optional[int] = None

    # Cached connectivity status (latest result folded back)
    functional: bool = False
    last_tested_at: Optional[datetime] = None
    last_score: Optional[int] = None
    last_quality: Optional[NetworkQuality] = None

    created_at: datetime = field(default_factory=now_utc)
    modified_at: datetime = field(default_factory=now_utc)


@dataclass
class ParentNodeRecord:
    """
    A parent node (NRA) grouping devices that share a physical site.

    All status fields are derived from member devices.
    """
    parent_id: str
    city: str = ""
    location: str = ""
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None
    functional: bool = False
    device_count: int = 0
    functional_rate: Optional[int] = None  # percent of functional members
    department: str = ""
    region: str = ""
    zone: ZoneType = ZoneType.UNKNOWN
    last_aggregated_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=now_utc)
    modified_at: datetime = field(default_factory=now_utc)


@dataclass
class ProbeResult:
    """Outcome of a single probe against a single address."""
    success: bool
    response_time_ms: Optional[float] = None
    failure: Optional[FailureKind] = None
    detail: Optional[str] = None

    @classmethod
    def ok(cls, response_time_ms: float) -> "ProbeResult":
        return cls(success=True, response_time_ms=response_time_ms)

    @classmethod
    def absent(cls) -> "ProbeResult":
        return cls(success=False, failure=FailureKind.SENTINEL_ADDRESS)

    @classmethod
    def failed(cls, detail: Optional[str] = None) -> "ProbeResult":
        return cls(success=False, failure=FailureKind.PROBE_FAILURE, detail=detail)


@dataclass
class ConnectivityTestResult:
    """Result of probing one device. Appended to history on every run."""
    device_id: str
    parent_id: str = ""
    ipv4_reachable: bool = False
    ipv4_ping_reachable: bool = False
    ipv4_udp_reachable: bool = False
    ipv6_reachable: bool = False
    is_reachable: bool = False
    response_time_ms: Optional[float] = None
    score: int = 0
    quality: NetworkQuality = NetworkQuality.UNAVAILABLE
    tested_at: datetime = field(default_factory=now_utc)
    error_details: Optional[str] = None
    failure: Optional[FailureKind] = None

    @classmethod
    def worst_case(cls, device: DeviceRecord, error: BaseException | str) -> "ConnectivityTestResult":
        """Synthetic result for a device whose probing or persistence failed."""
        return cls(
            device_id=device.device_id,
            parent_id=device.parent_id,
            score=0,
            quality=NetworkQuality.UNAVAILABLE,
            error_details=str(error),
            failure=FailureKind.DEVICE_FAILURE,
        )


@dataclass
class FailureRecord:
    """One failure captured while processing a unit."""
    kind: FailureKind
    subject: str  # device id, batch index or department code
    message: str


@dataclass
class UnitOutcome:
    """Outcome of a batch or a department unit."""
    unit: UnitKind
    key: str
    success: bool = True
    started_at: datetime = field(default_factory=now_utc)
    ended_at: Optional[datetime] = None
    items_processed: int = 0
    items_successful: int = 0
    items_failed: int = 0
    errors: list[FailureRecord] = field(default_factory=list)

    @property
    def duration_ms(self) -> int:
        if self.ended_at is None:
            return 0
        return int((self.ended_at - self.started_at).total_seconds() * 1000)


@dataclass
class UpsertOutcome:
    """Result of an upsert keyed by a unique identifier."""
    inserted: bool = False
    updated: bool = False


@dataclass
class DeviceFilter:
    """Selection of devices from the store."""
    functional: Optional[bool] = None
    department: Optional[str] = None
    city: Optional[str] = None
    parent_id: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class GroupCounts:
    """Raw per-group counters from the store."""
    group_key: Optional[str]
    total: int
    reachable: int
    average_score: Optional[float] = None


@dataclass
class FamilyCounts:
    """Per-group address-family counters over the latest result of each device."""
    group_key: Optional[str]
    total: int = 0
    ipv4_only: int = 0
    ipv6_only: int = 0
    both: int = 0
    udp_reachable: int = 0
    average_response_time_ms: Optional[float] = None


@dataclass
class GroupSummary:
    """Read-only department/region summary."""
    group_key: str
    count: int
    reachable_count: int
    reachability_rate: int
    average_score: Optional[float] = None
    udp_reachable: int = 0
    average_response_time_ms: Optional[int] = None


@dataclass
class BatchRunSummary:
    """Run-level counters of a batch probe."""
    processed: int = 0
    reachable: int = 0
    failed: int = 0
    batches: int = 0
    cancelled: bool = False
    results: list[ConnectivityTestResult] = field(default_factory=list)
    units: list[UnitOutcome] = field(default_factory=list)

    @property
    def reachability_rate(self) -> int:
        return percent(self.reachable, self.processed)


@dataclass
class RetestSummary:
    """Outcome of an explicit retest pass."""
    retested: int = 0
    newly_functional: int = 0
    still_failed: int = 0
    improved_rate_percent: int = 0


@dataclass
class CollectionSummary:
    """Outcome of the inventory collection phase."""
    departments: int = 0
    devices_collected: int = 0
    parent_nodes_collected: int = 0
    units: list[UnitOutcome] = field(default_factory=list)

    @property
    def errors(self) -> list[FailureRecord]:
        return [e for unit in self.units for e in unit.errors]


@dataclass
class FinalStatistics:
    """Population-wide statistics computed after a run."""
    total_tested: int = 0
    total_reachable: int = 0
    global_reachability_rate: int = 0
    average_score: Optional[float] = None
    ipv4_only: int = 0
    ipv6_only: int = 0
    both: int = 0
    udp_reachable: int = 0
    average_response_time_ms: Optional[int] = None
    quality_breakdown: dict[str, int] = field(default_factory=dict)
    department_summary: dict[str, GroupSummary] = field(default_factory=dict)
    region_summary: dict[str, GroupSummary] = field(default_factory=dict)


@dataclass
class GlobalProcessingResult:
    """Result of a full collect, probe and report run."""
    collection: CollectionSummary
    probing: BatchRunSummary
    statistics: FinalStatistics
    started_at: datetime = field(default_factory=now_utc)
    ended_at: Optional[datetime] = None

    @property
    def overall_duration_ms(self) -> int:
        if self.ended_at is None:
            return 0
        return int((self.ended_at - self.started_at).total_seconds() * 1000)


def percent(part: int, whole: int) -> int:
    """Integer percentage rounded half up; 0 when whole is 0."""
    if whole <= 0:
        return 0
    return int(part * 100 / whole + 0.5)
