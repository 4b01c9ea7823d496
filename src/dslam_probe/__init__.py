"""
DSLAM connectivity probe - reachability scoring for an access network fleet.

Probes every DSLAM of the inventory over IPv4 (ICMP echo and management
UDP port) and IPv6 (ICMP echo), scores each device from 0 to 100, derives a
quality tier and rolls the result up to the parent NRA.

Data layout:
    - Devices, parent nodes and append-only history in a local SQLite store
    - Inventory pulled department by department from an inventory source
    - Probes are plain ping/nc processes under a hard kill deadline
"""

__version__ = "1.0.0"

from ._types import (
    BatchRunSummary,
    ConnectivityTestResult,
    DeviceFilter,
    DeviceRecord,
    FailureKind,
    GlobalProcessingResult,
    NetworkQuality,
    ParentNodeRecord,
    ProbeResult,
    RetestSummary,
    UnitOutcome,
    ZoneType,
)

__all__ = [
    "__version__",
    "BatchRunSummary",
    "ConnectivityTestResult",
    "DeviceFilter",
    "DeviceRecord",
    "FailureKind",
    "GlobalProcessingResult",
    "NetworkQuality",
    "ParentNodeRecord",
    "ProbeResult",
    "RetestSummary",
    "UnitOutcome",
    "ZoneType",
]
