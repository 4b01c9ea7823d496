"""
Inventory collection phase.

Pulls device records department by department from an InventorySource,
enriches them with region and zone from the Geography, upserts them and
derives one parent node per distinct parent id.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

import yaml

from ._types import (
    CollectionSummary,
    DeviceRecord,
    FailureKind,
    FailureRecord,
    ParentNodeRecord,
    UnitKind,
    UnitOutcome,
    ZoneType,
    now_utc,
)
from .config import DEFAULT_ABSENT_MARKERS, EngineConfig
from .exceptions import InventorySourceError
from .geography import Geography
from .probes import is_absent_address
from .store import DeviceStore

logger = logging.getLogger(__name__)

_RECORD_FIELDS = (
    "device_id", "parent_id", "city", "location", "ipv4", "ipv6",
    "install_date", "service_date", "department", "postal_code", "population",
)


def device_from_mapping(data: dict[str, Any], department: str = "") -> DeviceRecord:
    """Build a DeviceRecord from a raw inventory entry."""
    if not data.get("device_id"):
        raise ValueError(f"Inventory entry without device_id: {data!r}")

    values = {k: data[k] for k in _RECORD_FIELDS if data.get(k) is not None}
    for key in ("device_id", "parent_id", "department", "postal_code"):
        if key in values:
            values[key] = str(values[key])
    if "population" in values:
        values["population"] = int(values["population"])
    values.setdefault("department", department)
    return DeviceRecord(**values)


class InventorySource(ABC):
    """Provider of raw device records, one department at a time."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of this source."""
        pass

    @abstractmethod
    async def fetch_department(self, code: str) -> list[DeviceRecord]:
        """
        Fetch the devices of one department.

        Raises InventorySourceError when the department cannot be read.
        """
        pass


class StaticInventorySource(InventorySource):
    """In-memory source, keyed by department code."""

    def __init__(self, departments: dict[str, list[DeviceRecord]]):
        self._departments = departments

    @property
    def name(self) -> str:
        return "static"

    async def fetch_department(self, code: str) -> list[DeviceRecord]:
        return list(self._departments.get(code, []))


class FileInventorySource(InventorySource):
    """
    Inventory read from a YAML or JSON file.

    Accepts either a mapping of department code to a list of entries, or a
    flat list of entries each carrying its own ``department``.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._by_department: Optional[dict[str, list[dict]]] = None

    @property
    def name(self) -> str:
        return f"file:{self.path}"

    def _load(self) -> dict[str, list[dict]]:
        if self._by_department is not None:
            return self._by_department

        try:
            with open(self.path) as f:
                if self.path.suffix == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise InventorySourceError(f"Cannot read inventory {self.path}", original_error=e) from e

        by_department: dict[str, list[dict]] = {}
        if isinstance(data, dict):
            for code, entries in data.items():
                by_department[str(code)] = list(entries or [])
        elif isinstance(data, list):
            for entry in data:
                by_department.setdefault(str(entry.get("department", "")), []).append(entry)
        elif data is not None:
            raise InventorySourceError(f"Unsupported inventory layout in {self.path}")

        logger.info(f"Loaded inventory for {len(by_department)} departments from {self.path}")
        self._by_department = by_department
        return by_department

    async def fetch_department(self, code: str) -> list[DeviceRecord]:
        entries = self._load().get(code, [])
        try:
            return [device_from_mapping(entry, department=code) for entry in entries]
        except (TypeError, ValueError) as e:
            raise InventorySourceError("Malformed inventory entry", department=code, original_error=e) from e


def derive_parent_nodes(
    devices: Iterable[DeviceRecord],
    absent_markers: Iterable[str] = DEFAULT_ABSENT_MARKERS,
) -> list[ParentNodeRecord]:
    """
    One parent node per distinct parent id, in first-seen order.

    Representative city, location and addresses are the first usable value
    among members; geography comes from the first member.
    """
    markers = list(absent_markers)
    nodes: dict[str, ParentNodeRecord] = {}

    for device in devices:
        if not device.parent_id:
            continue
        node = nodes.get(device.parent_id)
        if node is None:
            node = ParentNodeRecord(
                parent_id=device.parent_id,
                department=device.department,
                region=device.region,
                zone=device.zone,
            )
            nodes[device.parent_id] = node

        node.device_count += 1
        if not node.city and device.city:
            node.city = device.city
        if not node.location and device.location:
            node.location = device.location
        if node.ipv4 is None and not is_absent_address(device.ipv4, markers):
            node.ipv4 = device.ipv4
        if node.ipv6 is None and not is_absent_address(device.ipv6, markers):
            node.ipv6 = device.ipv6

    return list(nodes.values())


class InventoryCollector:
    """Collection phase: department-by-department inventory upsert."""

    def __init__(
        self,
        store: DeviceStore,
        source: InventorySource,
        geography: Optional[Geography] = None,
        config: Optional[EngineConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.source = source
        self.geography = geography or Geography()
        self.config = config or EngineConfig()
        self._sleep = sleep

    def _enrich(self, device: DeviceRecord, department: str) -> DeviceRecord:
        """Copy of device with department, region and zone filled in."""
        code = device.department or department
        zone = device.zone
        if zone == ZoneType.UNKNOWN:
            zone = self.geography.classify_zone(device.city, device.population)
        return dataclasses.replace(
            device,
            department=code,
            region=self.geography.region_for(code),
            zone=zone,
        )

    async def collect_department(self, code: str) -> tuple[UnitOutcome, int]:
        """
        Collect one department.

        Returns:
            (unit outcome, parent nodes upserted)
        """
        unit = UnitOutcome(unit=UnitKind.DEPARTMENT, key=code)

        try:
            devices = await self.source.fetch_department(code)
        except Exception as e:
            logger.error(f"Department {code}: inventory source failed: {e}")
            unit.success = False
            unit.errors.append(FailureRecord(FailureKind.UNIT_FAILURE, code, str(e)))
            unit.ended_at = now_utc()
            return unit, 0

        if not devices:
            logger.warning(f"Department {code}: no devices found")
            unit.success = False
            unit.errors.append(FailureRecord(FailureKind.UNIT_FAILURE, code, "no devices found"))
            unit.ended_at = now_utc()
            return unit, 0

        stored: list[DeviceRecord] = []
        for device in devices:
            unit.items_processed += 1
            try:
                enriched = self._enrich(device, code)
                self.store.upsert_device(enriched)
                stored.append(enriched)
                unit.items_successful += 1
            except Exception as e:
                logger.error(f"Department {code}: upsert of {device.device_id} failed: {e}")
                unit.items_failed += 1
                unit.errors.append(FailureRecord(FailureKind.DEVICE_FAILURE, device.device_id, str(e)))

        parents = 0
        for node in derive_parent_nodes(stored, self.config.absent_markers):
            try:
                self.store.upsert_parent_node(node)
                parents += 1
            except Exception as e:
                logger.error(f"Department {code}: upsert of parent node {node.parent_id} failed: {e}")
                unit.errors.append(FailureRecord(FailureKind.DEVICE_FAILURE, node.parent_id, str(e)))

        unit.ended_at = now_utc()
        logger.info(
            f"Department {code}: {unit.items_successful}/{unit.items_processed} devices, "
            f"{parents} parent nodes"
        )
        return unit, parents

    async def collect(self, departments: Optional[Sequence[str]] = None) -> CollectionSummary:
        """
        Collect every department in turn.

        A department that fails or returns nothing is recorded as a failed
        unit and the scan continues with the next one.
        """
        codes = list(departments or self.config.departments or self.geography.departments)
        summary = CollectionSummary()
        logger.info(f"Collecting inventory for {len(codes)} departments from {self.source.name}")

        for index, code in enumerate(codes):
            unit, parents = await self.collect_department(code)
            summary.units.append(unit)
            summary.departments += 1
            summary.devices_collected += unit.items_successful
            summary.parent_nodes_collected += parents

            if index < len(codes) - 1:
                await self._sleep(self.config.department_delay_s)

        failed = sum(1 for u in summary.units if not u.success)
        logger.info(
            f"Collection complete: {summary.devices_collected} devices, "
            f"{summary.parent_nodes_collected} parent nodes, "
            f"{failed}/{summary.departments} departments failed"
        )
        return summary
