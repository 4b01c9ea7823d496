"""Tests for the SQLite device store."""

import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

from dslam_probe._types import (
    ConnectivityTestResult,
    DeviceFilter,
    DeviceRecord,
    FailureKind,
    NetworkQuality,
    ParentNodeRecord,
    ZoneType,
    now_utc,
)
from dslam_probe.exceptions import StoreError, StoreUnavailableError
from dslam_probe.store import SqliteDeviceStore


@pytest.fixture
def store():
    """Create a temporary store for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield SqliteDeviceStore(db_path)

    # Cleanup
    db_path.unlink(missing_ok=True)
    db_path.with_suffix(".db-wal").unlink(missing_ok=True)
    db_path.with_suffix(".db-shm").unlink(missing_ok=True)


def make_result(device_id, reachable, score=0, quality=None, parent_id=""):
    return ConnectivityTestResult(
        device_id=device_id,
        parent_id=parent_id,
        is_reachable=reachable,
        ipv4_reachable=reachable,
        score=score,
        quality=quality or (NetworkQuality.POOR if reachable else NetworkQuality.UNAVAILABLE),
    )


class TestDeviceUpsert:
    """Tests for device upsert."""

    def test_insert_device(self, store):
        """Should insert a new device."""
        device = DeviceRecord(
            device_id="D1",
            parent_id="N1",
            city="ROUEN",
            ipv4="10.0.0.1",
            ipv6="N/A",
            department="76",
            zone=ZoneType.URBAN,
            population=110000,
        )

        outcome = store.upsert_device(device)

        assert outcome.inserted is True
        assert outcome.updated is False

        retrieved = store.get_device("D1")
        assert retrieved is not None
        assert retrieved.city == "ROUEN"
        assert retrieved.ipv6 == "N/A"
        assert retrieved.zone == ZoneType.URBAN
        assert retrieved.population == 110000
        assert retrieved.functional is False

    def test_update_preserves_created_at(self, store):
        """An update should never overwrite created_at."""
        original = DeviceRecord(device_id="D1", city="ROUEN", created_at=now_utc() - timedelta(days=30))
        store.upsert_device(original)

        changed = DeviceRecord(device_id="D1", city="LE HAVRE")
        outcome = store.upsert_device(changed)

        assert outcome.inserted is False
        assert outcome.updated is True
        retrieved = store.get_device("D1")
        assert retrieved.city == "LE HAVRE"
        assert retrieved.created_at == original.created_at

    def test_unchanged_upsert(self, store):
        device = DeviceRecord(device_id="D1", city="ROUEN")
        store.upsert_device(device)

        outcome = store.upsert_device(DeviceRecord(device_id="D1", city="ROUEN"))

        assert outcome.inserted is False
        assert outcome.updated is False

    def test_upsert_keeps_cached_status(self, store):
        """Re-collecting a device should not reset its connectivity status."""
        store.upsert_device(DeviceRecord(device_id="D1", city="ROUEN"))
        store.update_device_status(make_result("D1", True, score=70, quality=NetworkQuality.GOOD))

        store.upsert_device(DeviceRecord(device_id="D1", city="CAEN"))

        retrieved = store.get_device("D1")
        assert retrieved.functional is True
        assert retrieved.last_score == 70
        assert retrieved.last_quality == NetworkQuality.GOOD

    def test_get_missing_device(self, store):
        assert store.get_device("nope") is None


class TestFindDevices:
    """Tests for population queries."""

    @pytest.fixture
    def populated(self, store):
        for i in range(6):
            store.upsert_device(DeviceRecord(
                device_id=f"D{i}",
                parent_id="N1" if i < 3 else "N2",
                department="76" if i % 2 == 0 else "14",
                city="ROUEN" if i < 3 else "CAEN",
            ))
        store.update_device_status(make_result("D1", True))
        store.update_device_status(make_result("D4", True))
        return store

    def test_population_order(self, populated):
        """Devices should come back in insertion order."""
        devices = populated.find_devices()
        assert [d.device_id for d in devices] == [f"D{i}" for i in range(6)]

    def test_filter_functional(self, populated):
        devices = populated.find_devices(DeviceFilter(functional=False))
        assert [d.device_id for d in devices] == ["D0", "D2", "D3", "D5"]

    def test_filter_department_and_limit(self, populated):
        devices = populated.find_devices(DeviceFilter(department="76", limit=2))
        assert [d.device_id for d in devices] == ["D0", "D2"]

    def test_filter_parent(self, populated):
        devices = populated.find_devices(DeviceFilter(parent_id="N2"))
        assert {d.device_id for d in devices} == {"D3", "D4", "D5"}

    def test_filter_city(self, populated):
        devices = populated.find_devices(DeviceFilter(city="CAEN", functional=True))
        assert [d.device_id for d in devices] == ["D4"]


class TestStatusAndHistory:
    """Tests for result persistence."""

    def test_update_status(self, store):
        store.upsert_device(DeviceRecord(device_id="D1"))
        result = make_result("D1", True, score=85, quality=NetworkQuality.EXCELLENT)

        assert store.update_device_status(result) is True

        device = store.get_device("D1")
        assert device.functional is True
        assert device.last_score == 85
        assert device.last_quality == NetworkQuality.EXCELLENT
        assert device.last_tested_at == result.tested_at

    def test_update_status_unknown_device(self, store):
        assert store.update_device_status(make_result("ghost", True)) is False

    def test_history_is_append_only(self, store):
        """Every result should be kept, newest first."""
        store.upsert_device(DeviceRecord(device_id="D1"))
        store.append_history(make_result("D1", False))
        store.append_history(ConnectivityTestResult(
            device_id="D1",
            error_details="boom",
            failure=FailureKind.DEVICE_FAILURE,
        ))
        store.append_history(make_result("D1", True, score=35, quality=NetworkQuality.POOR))

        history = store.get_history("D1")

        assert len(history) == 3
        assert history[0].is_reachable is True
        assert history[0].score == 35
        assert history[1].failure == FailureKind.DEVICE_FAILURE
        assert history[1].error_details == "boom"
        assert history[2].quality == NetworkQuality.UNAVAILABLE

    def test_history_limit(self, store):
        for _ in range(5):
            store.append_history(make_result("D1", False))
        assert len(store.get_history("D1", limit=2)) == 2


class TestParentNodes:
    """Tests for parent node persistence."""

    def test_insert_and_get(self, store):
        node = ParentNodeRecord(parent_id="N1", city="ROUEN", ipv4="10.0.0.1", device_count=3)

        outcome = store.upsert_parent_node(node)

        assert outcome.inserted is True
        retrieved = store.get_parent_node("N1")
        assert retrieved.city == "ROUEN"
        assert retrieved.device_count == 3
        assert retrieved.functional is False
        assert retrieved.functional_rate is None

    def test_update_preserves_derived_status(self, store):
        """Upserting inventory fields should not reset the derived status."""
        store.upsert_parent_node(ParentNodeRecord(parent_id="N1", city="ROUEN", device_count=2))
        store.update_parent_node_status("N1", functional=True, functional_rate=50, device_count=2)

        outcome = store.upsert_parent_node(ParentNodeRecord(parent_id="N1", city="DARNETAL", device_count=2))

        assert outcome.updated is True
        node = store.get_parent_node("N1")
        assert node.city == "DARNETAL"
        assert node.functional is True
        assert node.functional_rate == 50
        assert node.last_aggregated_at is not None

    def test_update_status_unknown_node(self, store):
        assert store.update_parent_node_status("ghost", True, 100, 1) is False


class TestAggregationQueries:
    """Tests for group-by queries."""

    @pytest.fixture
    def tested(self, store):
        rows = [
            ("D1", "N1", "76", True, 85, NetworkQuality.EXCELLENT),
            ("D2", "N1", "76", False, 0, NetworkQuality.UNAVAILABLE),
            ("D3", "N2", "14", True, 35, NetworkQuality.POOR),
        ]
        for device_id, parent_id, dept, reachable, score, quality in rows:
            store.upsert_device(DeviceRecord(device_id=device_id, parent_id=parent_id, department=dept,
                                             region="Normandie", city=f"CITY-{parent_id}"))
            store.update_device_status(make_result(device_id, reachable, score, quality))
        store.upsert_device(DeviceRecord(device_id="D4", parent_id="N2", department="14"))
        return store

    def test_group_by_department(self, tested):
        groups = {g.group_key: g for g in tested.aggregate_group_by("department")}

        assert groups["76"].total == 2
        assert groups["76"].reachable == 1
        assert groups["76"].average_score == pytest.approx(42.5)
        assert groups["14"].total == 2

    def test_group_by_tested_only(self, tested):
        groups = {g.group_key: g for g in tested.aggregate_group_by("department", tested_only=True)}
        assert groups["14"].total == 1

    def test_group_by_rejects_unknown_field(self, tested):
        with pytest.raises(ValueError):
            tested.aggregate_group_by("ipv4; DROP TABLE devices")

    def test_parent_member_counts(self, tested):
        counts = tested.parent_member_counts()

        assert counts["N1"].total == 2
        assert counts["N1"].reachable == 1
        assert counts["N2"].total == 2
        assert counts["N2"].reachable == 1

    def test_parent_member_counts_subset(self, tested):
        counts = tested.parent_member_counts(["N2"])
        assert list(counts) == ["N2"]
        assert tested.parent_member_counts([]) == {}

    def test_non_functional_sites(self, tested):
        """Untested devices should not count as problem sites."""
        sites = tested.non_functional_sites()

        assert sites == [{
            "city": "CITY-N1",
            "parent_id": "N1",
            "non_functional": 1,
            "device_ids": ["D2"],
        }]

    def test_device_counts(self, tested):
        counts = tested.get_device_counts()
        assert counts == {"devices": 4, "tested": 3, "functional": 2, "parent_nodes": 0}


class TestFamilyCounts:
    """Tests for address-family counters over the latest results."""

    @pytest.fixture
    def measured(self, store):
        rows = [
            # device, department, region, ipv4, ipv6, udp, response time
            ("D2", "76", "Normandie", True, True, True, 5.0),
            ("D1", "76", "Normandie", True, True, True, 20.0),
            ("D2", "76", "Normandie", True, False, False, 41.0),
            ("D3", "35", "Bretagne", False, True, False, 60.0),
            ("D4", "35", "Bretagne", False, False, False, None),
        ]
        for device_id, dept, region, ipv4, ipv6, udp, response in rows:
            store.upsert_device(DeviceRecord(device_id=device_id, department=dept, region=region))
            store.append_history(ConnectivityTestResult(
                device_id=device_id,
                ipv4_reachable=ipv4,
                ipv4_ping_reachable=ipv4,
                ipv4_udp_reachable=udp,
                ipv6_reachable=ipv6,
                is_reachable=ipv4 or ipv6,
                response_time_ms=response,
            ))
        store.upsert_device(DeviceRecord(device_id="D5", department="76", region="Normandie"))
        return store

    def test_population_wide(self, measured):
        """Only the newest result of each device should count."""
        overall = measured.family_counts()[None]

        assert overall.total == 4
        assert overall.ipv4_only == 1
        assert overall.ipv6_only == 1
        assert overall.both == 1
        assert overall.udp_reachable == 1
        assert overall.average_response_time_ms == pytest.approx(121.0 / 3)

    def test_by_department(self, measured):
        counts = measured.family_counts("department")

        assert set(counts) == {"76", "35"}
        assert counts["76"].total == 2
        assert counts["76"].udp_reachable == 1
        assert counts["76"].average_response_time_ms == pytest.approx(30.5)
        assert counts["35"].udp_reachable == 0
        assert counts["35"].average_response_time_ms == pytest.approx(60.0)

    def test_empty_history(self, store):
        store.upsert_device(DeviceRecord(device_id="D1"))
        assert store.family_counts() == {}

    def test_rejects_unknown_field(self, store):
        with pytest.raises(ValueError):
            store.family_counts("last_quality")


class TestStoreFailures:
    """Tests for storage error handling."""

    def test_unopenable_store(self, tmp_path):
        """A path that cannot hold a database should be fatal."""
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")

        with pytest.raises(StoreUnavailableError):
            SqliteDeviceStore(blocker / "sub" / "dslam.db")

    def test_population_query_failure_is_fatal(self, store):
        """A population that cannot be read should raise StoreUnavailableError."""
        store.db_path.unlink()
        store.db_path.mkdir()
        try:
            with pytest.raises(StoreUnavailableError):
                store.find_devices()
        finally:
            store.db_path.rmdir()
            store.db_path.touch()

    def test_store_error_is_dslam_error(self):
        assert issubclass(StoreUnavailableError, StoreError)
