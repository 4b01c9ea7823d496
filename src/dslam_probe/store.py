"""
Device inventory store.

DeviceStore is the storage interface used by the scheduler, the aggregator
and the collection phase. SqliteDeviceStore is the default implementation:
a SQLite database holding

- Devices (DSLAMs) and their cached connectivity status
- Parent nodes (NRAs) and their derived status
- Append-only connectivity history

Uses WAL mode for crash safety and concurrent reads.
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

from ._types import (
    ConnectivityTestResult,
    DeviceFilter,
    DeviceRecord,
    FailureKind,
    FamilyCounts,
    GroupCounts,
    NetworkQuality,
    ParentNodeRecord,
    UpsertOutcome,
    ZoneType,
    now_utc,
)
from .exceptions import StoreError, StoreUnavailableError

logger = logging.getLogger(__name__)


# Columns aggregate_group_by may group on
GROUPABLE_FIELDS = frozenset({"department", "region", "zone", "city", "parent_id", "last_quality"})

# Device columns family_counts may group on
FAMILY_GROUP_FIELDS = frozenset({"department", "region"})


class DeviceStore(ABC):
    """Storage collaborator for devices, parent nodes and history."""

    @abstractmethod
    def find_devices(self, device_filter: Optional[DeviceFilter] = None) -> list[DeviceRecord]:
        """
        Devices matching the filter, in population order.

        Raises StoreUnavailableError if the population cannot be read.
        """

    @abstractmethod
    def upsert_device(self, record: DeviceRecord) -> UpsertOutcome:
        """Insert or update a device by id. Never overwrites created_at."""

    @abstractmethod
    def upsert_parent_node(self, record: ParentNodeRecord) -> UpsertOutcome:
        """Insert or update a parent node by id. Never overwrites created_at."""

    @abstractmethod
    def append_history(self, result: ConnectivityTestResult) -> None:
        """Append a connectivity result to history."""

    @abstractmethod
    def update_device_status(self, result: ConnectivityTestResult) -> bool:
        """Fold a result into the device's cached status fields."""

    @abstractmethod
    def aggregate_group_by(self, field: str, tested_only: bool = False) -> list[GroupCounts]:
        """Total, functional count and average score per value of field."""

    @abstractmethod
    def family_counts(self, field: Optional[str] = None) -> dict[Optional[str], FamilyCounts]:
        """Address-family counters over the latest result of each device, per value of field."""

    @abstractmethod
    def parent_member_counts(self, parent_ids: Optional[Iterable[str]] = None) -> dict[str, GroupCounts]:
        """Member totals and functional members per parent node."""

    @abstractmethod
    def update_parent_node_status(
        self,
        parent_id: str,
        functional: bool,
        functional_rate: int,
        device_count: int,
        aggregated_at: Optional[datetime] = None,
    ) -> bool:
        """Write the derived status of a parent node."""

    @abstractmethod
    def non_functional_sites(self, limit: int = 20) -> list[dict]:
        """(city, parent node) groups ordered by non-functional device count."""

    @abstractmethod
    def get_device_counts(self) -> dict[str, int]:
        pass

    @abstractmethod
    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        pass

    @abstractmethod
    def get_parent_node(self, parent_id: str) -> Optional[ParentNodeRecord]:
        pass

    @abstractmethod
    def get_history(self, device_id: str, limit: int = 50) -> list[ConnectivityTestResult]:
        pass


# Database schema
SCHEMA = """
-- Access devices (DSLAM) with cached connectivity status
CREATE TABLE IF NOT EXISTS devices (
    device_id TEXT PRIMARY KEY,
    parent_id TEXT NOT NULL DEFAULT '',
    city TEXT DEFAULT '',
    location TEXT DEFAULT '',
    ipv4 TEXT,
    ipv6 TEXT,
    install_date TEXT DEFAULT '',
    service_date TEXT DEFAULT '',

    -- Geography
    department TEXT DEFAULT '',
    region TEXT DEFAULT '',
    zone TEXT DEFAULT 'unknown',
    postal_code TEXT,
    population INTEGER,

    -- Latest result folded back
    functional BOOLEAN DEFAULT FALSE,
    last_tested_at TEXT,
    last_score INTEGER,
    last_quality TEXT,

    created_at TEXT NOT NULL,
    modified_at TEXT NOT NULL
);

-- Parent nodes (NRA); status fields are derived from members
CREATE TABLE IF NOT EXISTS parent_nodes (
    parent_id TEXT PRIMARY KEY,
    city TEXT DEFAULT '',
    location TEXT DEFAULT '',
    ipv4 TEXT,
    ipv6 TEXT,
    functional BOOLEAN DEFAULT FALSE,
    device_count INTEGER DEFAULT 0,
    functional_rate INTEGER,
    department TEXT DEFAULT '',
    region TEXT DEFAULT '',
    zone TEXT DEFAULT 'unknown',
    last_aggregated_at TEXT,
    created_at TEXT NOT NULL,
    modified_at TEXT NOT NULL
);

-- Connectivity history (append-only)
CREATE TABLE IF NOT EXISTS connectivity_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    parent_id TEXT DEFAULT '',
    ipv4_reachable BOOLEAN DEFAULT FALSE,
    ipv4_ping_reachable BOOLEAN DEFAULT FALSE,
    ipv4_udp_reachable BOOLEAN DEFAULT FALSE,
    ipv6_reachable BOOLEAN DEFAULT FALSE,
    is_reachable BOOLEAN DEFAULT FALSE,
    response_time_ms REAL,
    score INTEGER NOT NULL DEFAULT 0,
    quality TEXT NOT NULL,
    tested_at TEXT NOT NULL,
    error_details TEXT,
    failure TEXT
);

CREATE INDEX IF NOT EXISTS idx_devices_parent ON devices(parent_id);
CREATE INDEX IF NOT EXISTS idx_devices_department ON devices(department);
CREATE INDEX IF NOT EXISTS idx_devices_functional ON devices(functional);
CREATE INDEX IF NOT EXISTS idx_history_device ON connectivity_history(device_id);
CREATE INDEX IF NOT EXISTS idx_history_tested ON connectivity_history(tested_at);
"""

# Inventory fields refreshed by upsert; status fields are left alone
_DEVICE_INVENTORY_FIELDS = (
    "parent_id", "city", "location", "ipv4", "ipv6", "install_date",
    "service_date", "department", "region", "zone", "postal_code", "population",
)

_PARENT_INVENTORY_FIELDS = (
    "city", "location", "ipv4", "ipv6", "device_count", "department", "region", "zone",
)


def _iso_format(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime as ISO string."""
    return dt.isoformat() if dt else None


def _parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def _db_value(value):
    if isinstance(value, (ZoneType, NetworkQuality, FailureKind)):
        return value.value
    return value


class SqliteDeviceStore(DeviceStore):
    """
    SQLite implementation of DeviceStore.

    One short-lived connection per operation; WAL mode allows the status API
    to read while a run is writing.
    """

    def __init__(self, db_path: Path | str = "/var/lib/dslam-probe/dslam.db"):
        self.db_path = Path(db_path)
        try:
            self._ensure_directory()
            self._init_db()
        except (OSError, StoreError) as e:
            raise StoreUnavailableError(
                f"Cannot open device store at {self.db_path}",
                operation="open",
                original_error=e,
            ) from e

    def _ensure_directory(self) -> None:
        """Ensure database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        """Initialize database with schema."""
        with self._get_connection("init") as conn:
            conn.executescript(SCHEMA)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.commit()

    @contextmanager
    def _get_connection(self, operation: str = "query") -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory; sqlite errors become StoreError."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot connect to {self.db_path}", operation=operation, original_error=e) from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreError(f"SQLite {operation} failed", operation=operation, original_error=e) from e
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------------

    def find_devices(self, device_filter: Optional[DeviceFilter] = None) -> list[DeviceRecord]:
        device_filter = device_filter or DeviceFilter()
        query = "SELECT * FROM devices WHERE 1=1"
        params: list = []

        if device_filter.functional is not None:
            query += " AND functional = ?"
            params.append(device_filter.functional)
        if device_filter.department:
            query += " AND department = ?"
            params.append(device_filter.department)
        if device_filter.city:
            query += " AND city = ?"
            params.append(device_filter.city)
        if device_filter.parent_id:
            query += " AND parent_id = ?"
            params.append(device_filter.parent_id)

        query += " ORDER BY rowid"
        if device_filter.limit is not None:
            query += " LIMIT ?"
            params.append(device_filter.limit)

        try:
            with self._get_connection("find_devices") as conn:
                rows = conn.execute(query, params).fetchall()
        except StoreError as e:
            raise StoreUnavailableError(
                "Cannot load device population", operation="find_devices", original_error=e
            ) from e
        return [self._row_to_device(row) for row in rows]

    def upsert_device(self, record: DeviceRecord) -> UpsertOutcome:
        """
        Insert or update a device.

        Updates only touch inventory fields; created_at and the cached
        status are preserved.
        """
        with self._get_connection("upsert_device") as conn:
            existing = conn.execute(
                "SELECT * FROM devices WHERE device_id = ?", (record.device_id,)
            ).fetchone()

            if existing:
                values = [_db_value(getattr(record, f)) for f in _DEVICE_INVENTORY_FIELDS]
                if all(existing[f] == v for f, v in zip(_DEVICE_INVENTORY_FIELDS, values)):
                    return UpsertOutcome(inserted=False, updated=False)

                assignments = ", ".join(f"{f} = ?" for f in _DEVICE_INVENTORY_FIELDS)
                conn.execute(
                    f"UPDATE devices SET {assignments}, modified_at = ? WHERE device_id = ?",
                    (*values, _iso_format(now_utc()), record.device_id),
                )
                conn.commit()
                return UpsertOutcome(inserted=False, updated=True)

            conn.execute("""
                INSERT INTO devices (
                    device_id, parent_id, city, location, ipv4, ipv6,
                    install_date, service_date, department, region, zone,
                    postal_code, population, functional, last_tested_at,
                    last_score, last_quality, created_at, modified_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.device_id,
                record.parent_id,
                record.city,
                record.location,
                record.ipv4,
                record.ipv6,
                record.install_date,
                record.service_date,
                record.department,
                record.region,
                record.zone.value,
                record.postal_code,
                record.population,
                record.functional,
                _iso_format(record.last_tested_at),
                record.last_score,
                _db_value(record.last_quality),
                _iso_format(record.created_at),
                _iso_format(record.modified_at),
            ))
            conn.commit()
            return UpsertOutcome(inserted=True, updated=False)

    def update_device_status(self, result: ConnectivityTestResult) -> bool:
        with self._get_connection("update_device_status") as conn:
            cursor = conn.execute("""
                UPDATE devices SET
                    functional = ?,
                    last_tested_at = ?,
                    last_score = ?,
                    last_quality = ?,
                    modified_at = ?
                WHERE device_id = ?
            """, (
                result.is_reachable,
                _iso_format(result.tested_at),
                result.score,
                result.quality.value,
                _iso_format(now_utc()),
                result.device_id,
            ))
            conn.commit()
            return cursor.rowcount > 0

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        """Get device by ID."""
        with self._get_connection("get_device") as conn:
            row = conn.execute(
                "SELECT * FROM devices WHERE device_id = ?", (device_id,)
            ).fetchone()
            if row:
                return self._row_to_device(row)
            return None

    def _row_to_device(self, row: sqlite3.Row) -> DeviceRecord:
        """Convert database row to DeviceRecord."""
        return DeviceRecord(
            device_id=row["device_id"],
            parent_id=row["parent_id"] or "",
            city=row["city"] or "",
            location=row["location"] or "",
            ipv4=row["ipv4"],
            ipv6=row["ipv6"],
            install_date=row["install_date"] or "",
            service_date=row["service_date"] or "",
            department=row["department"] or "",
            region=row["region"] or "",
            zone=ZoneType(row["zone"] or "unknown"),
            postal_code=row["postal_code"],
            population=row["population"],
            functional=bool(row["functional"]),
            last_tested_at=_parse_datetime(row["last_tested_at"]),
            last_score=row["last_score"],
            last_quality=NetworkQuality(row["last_quality"]) if row["last_quality"] else None,
            created_at=_parse_datetime(row["created_at"]) or now_utc(),
            modified_at=_parse_datetime(row["modified_at"]) or now_utc(),
        )

    # -------------------------------------------------------------------------
    # Parent nodes
    # -------------------------------------------------------------------------

    def upsert_parent_node(self, record: ParentNodeRecord) -> UpsertOutcome:
        """Insert or update a parent node. Derived status is preserved on update."""
        with self._get_connection("upsert_parent_node") as conn:
            existing = conn.execute(
                "SELECT * FROM parent_nodes WHERE parent_id = ?", (record.parent_id,)
            ).fetchone()

            if existing:
                values = [_db_value(getattr(record, f)) for f in _PARENT_INVENTORY_FIELDS]
                if all(existing[f] == v for f, v in zip(_PARENT_INVENTORY_FIELDS, values)):
                    return UpsertOutcome(inserted=False, updated=False)

                assignments = ", ".join(f"{f} = ?" for f in _PARENT_INVENTORY_FIELDS)
                conn.execute(
                    f"UPDATE parent_nodes SET {assignments}, modified_at = ? WHERE parent_id = ?",
                    (*values, _iso_format(now_utc()), record.parent_id),
                )
                conn.commit()
                return UpsertOutcome(inserted=False, updated=True)

            conn.execute("""
                INSERT INTO parent_nodes (
                    parent_id, city, location, ipv4, ipv6, functional,
                    device_count, functional_rate, department, region, zone,
                    last_aggregated_at, created_at, modified_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.parent_id,
                record.city,
                record.location,
                record.ipv4,
                record.ipv6,
                record.functional,
                record.device_count,
                record.functional_rate,
                record.department,
                record.region,
                record.zone.value,
                _iso_format(record.last_aggregated_at),
                _iso_format(record.created_at),
                _iso_format(record.modified_at),
            ))
            conn.commit()
            return UpsertOutcome(inserted=True, updated=False)

    def update_parent_node_status(
        self,
        parent_id: str,
        functional: bool,
        functional_rate: int,
        device_count: int,
        aggregated_at: Optional[datetime] = None,
    ) -> bool:
        with self._get_connection("update_parent_node_status") as conn:
            cursor = conn.execute("""
                UPDATE parent_nodes SET
                    functional = ?,
                    functional_rate = ?,
                    device_count = ?,
                    last_aggregated_at = ?,
                    modified_at = ?
                WHERE parent_id = ?
            """, (
                functional,
                functional_rate,
                device_count,
                _iso_format(aggregated_at or now_utc()),
                _iso_format(now_utc()),
                parent_id,
            ))
            conn.commit()
            return cursor.rowcount > 0

    def get_parent_node(self, parent_id: str) -> Optional[ParentNodeRecord]:
        """Get parent node by ID."""
        with self._get_connection("get_parent_node") as conn:
            row = conn.execute(
                "SELECT * FROM parent_nodes WHERE parent_id = ?", (parent_id,)
            ).fetchone()
        if not row:
            return None
        return ParentNodeRecord(
            parent_id=row["parent_id"],
            city=row["city"] or "",
            location=row["location"] or "",
            ipv4=row["ipv4"],
            ipv6=row["ipv6"],
            functional=bool(row["functional"]),
            device_count=row["device_count"] or 0,
            functional_rate=row["functional_rate"],
            department=row["department"] or "",
            region=row["region"] or "",
            zone=ZoneType(row["zone"] or "unknown"),
            last_aggregated_at=_parse_datetime(row["last_aggregated_at"]),
            created_at=_parse_datetime(row["created_at"]) or now_utc(),
            modified_at=_parse_datetime(row["modified_at"]) or now_utc(),
        )

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def append_history(self, result: ConnectivityTestResult) -> None:
        with self._get_connection("append_history") as conn:
            conn.execute("""
                INSERT INTO connectivity_history (
                    device_id, parent_id, ipv4_reachable, ipv4_ping_reachable,
                    ipv4_udp_reachable, ipv6_reachable, is_reachable,
                    response_time_ms, score, quality, tested_at,
                    error_details, failure
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                result.device_id,
                result.parent_id,
                result.ipv4_reachable,
                result.ipv4_ping_reachable,
                result.ipv4_udp_reachable,
                result.ipv6_reachable,
                result.is_reachable,
                result.response_time_ms,
                result.score,
                result.quality.value,
                _iso_format(result.tested_at),
                result.error_details,
                _db_value(result.failure),
            ))
            conn.commit()

    def get_history(self, device_id: str, limit: int = 50) -> list[ConnectivityTestResult]:
        """Results for a device, newest first."""
        with self._get_connection("get_history") as conn:
            rows = conn.execute(
                "SELECT * FROM connectivity_history WHERE device_id = ? ORDER BY id DESC LIMIT ?",
                (device_id, limit),
            ).fetchall()
        return [
            ConnectivityTestResult(
                device_id=row["device_id"],
                parent_id=row["parent_id"] or "",
                ipv4_reachable=bool(row["ipv4_reachable"]),
                ipv4_ping_reachable=bool(row["ipv4_ping_reachable"]),
                ipv4_udp_reachable=bool(row["ipv4_udp_reachable"]),
                ipv6_reachable=bool(row["ipv6_reachable"]),
                is_reachable=bool(row["is_reachable"]),
                response_time_ms=row["response_time_ms"],
                score=row["score"],
                quality=NetworkQuality(row["quality"]),
                tested_at=_parse_datetime(row["tested_at"]) or now_utc(),
                error_details=row["error_details"],
                failure=FailureKind(row["failure"]) if row["failure"] else None,
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def aggregate_group_by(self, field: str, tested_only: bool = False) -> list[GroupCounts]:
        if field not in GROUPABLE_FIELDS:
            raise ValueError(f"Cannot group devices by {field!r}")

        where = "WHERE last_tested_at IS NOT NULL" if tested_only else ""
        with self._get_connection("aggregate_group_by") as conn:
            rows = conn.execute(f"""
                SELECT {field} AS group_key,
                       COUNT(*) AS total,
                       SUM(CASE WHEN functional THEN 1 ELSE 0 END) AS reachable,
                       AVG(last_score) AS average_score
                FROM devices
                {where}
                GROUP BY {field}
                ORDER BY {field}
            """).fetchall()
        return [
            GroupCounts(
                group_key=row["group_key"],
                total=row["total"],
                reachable=row["reachable"] or 0,
                average_score=row["average_score"],
            )
            for row in rows
        ]

    def parent_member_counts(self, parent_ids: Optional[Iterable[str]] = None) -> dict[str, GroupCounts]:
        query = """
            SELECT parent_id,
                   COUNT(*) AS total,
                   SUM(CASE WHEN functional THEN 1 ELSE 0 END) AS reachable,
                   AVG(last_score) AS average_score
            FROM devices
            WHERE parent_id != ''
        """
        params: list = []
        if parent_ids is not None:
            ids = sorted(set(parent_ids))
            if not ids:
                return {}
            query += f" AND parent_id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        query += " GROUP BY parent_id"

        with self._get_connection("parent_member_counts") as conn:
            rows = conn.execute(query, params).fetchall()
        return {
            row["parent_id"]: GroupCounts(
                group_key=row["parent_id"],
                total=row["total"],
                reachable=row["reachable"] or 0,
                average_score=row["average_score"],
            )
            for row in rows
        }

    def family_counts(self, field: Optional[str] = None) -> dict[Optional[str], FamilyCounts]:
        """
        Counters over the newest history row of each device.

        Args:
            field: Device column to group on (None = one population-wide group)

        Returns:
            FamilyCounts keyed by group value (None for the population-wide group)
        """
        if field is not None and field not in FAMILY_GROUP_FIELDS:
            raise ValueError(f"Cannot group results by {field!r}")

        group_key = f"d.{field}" if field else "NULL"
        group_by = f"GROUP BY d.{field}" if field else ""
        with self._get_connection("family_counts") as conn:
            rows = conn.execute(f"""
                SELECT {group_key} AS group_key,
                       COUNT(*) AS total,
                       SUM(CASE WHEN h.ipv4_reachable AND NOT h.ipv6_reachable THEN 1 ELSE 0 END) AS ipv4_only,
                       SUM(CASE WHEN h.ipv6_reachable AND NOT h.ipv4_reachable THEN 1 ELSE 0 END) AS ipv6_only,
                       SUM(CASE WHEN h.ipv4_reachable AND h.ipv6_reachable THEN 1 ELSE 0 END) AS both_families,
                       SUM(CASE WHEN h.ipv4_udp_reachable THEN 1 ELSE 0 END) AS udp_reachable,
                       AVG(h.response_time_ms) AS average_response_time_ms
                FROM connectivity_history h
                JOIN (
                    SELECT device_id, MAX(id) AS id FROM connectivity_history GROUP BY device_id
                ) latest ON latest.id = h.id
                JOIN devices d ON d.device_id = h.device_id
                {group_by}
            """).fetchall()
        return {
            row["group_key"]: FamilyCounts(
                group_key=row["group_key"],
                total=row["total"],
                ipv4_only=row["ipv4_only"] or 0,
                ipv6_only=row["ipv6_only"] or 0,
                both=row["both_families"] or 0,
                udp_reachable=row["udp_reachable"] or 0,
                average_response_time_ms=row["average_response_time_ms"],
            )
            for row in rows
            if row["total"]
        }

    def non_functional_sites(self, limit: int = 20) -> list[dict]:
        with self._get_connection("non_functional_sites") as conn:
            rows = conn.execute("""
                SELECT city, parent_id,
                       COUNT(*) AS non_functional,
                       GROUP_CONCAT(device_id) AS device_ids
                FROM devices
                WHERE functional = FALSE AND last_tested_at IS NOT NULL
                GROUP BY city, parent_id
                ORDER BY non_functional DESC, city, parent_id
                LIMIT ?
            """, (limit,)).fetchall()
        return [
            {
                "city": row["city"],
                "parent_id": row["parent_id"],
                "non_functional": row["non_functional"],
                "device_ids": sorted(row["device_ids"].split(",")) if row["device_ids"] else [],
            }
            for row in rows
        ]

    def get_device_counts(self) -> dict[str, int]:
        """Totals used by the health endpoint."""
        with self._get_connection("get_device_counts") as conn:
            devices = conn.execute("SELECT COUNT(*) AS cnt FROM devices").fetchone()["cnt"]
            tested = conn.execute(
                "SELECT COUNT(*) AS cnt FROM devices WHERE last_tested_at IS NOT NULL"
            ).fetchone()["cnt"]
            functional = conn.execute(
                "SELECT COUNT(*) AS cnt FROM devices WHERE functional = TRUE"
            ).fetchone()["cnt"]
            parents = conn.execute("SELECT COUNT(*) AS cnt FROM parent_nodes").fetchone()["cnt"]
        return {
            "devices": devices,
            "tested": tested,
            "functional": functional,
            "parent_nodes": parents,
        }
