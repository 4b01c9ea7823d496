"""Tests for the connectivity service."""

import asyncio
import json
import logging
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dslam_probe._types import (
    ConnectivityTestResult,
    DeviceRecord,
    NetworkQuality,
    RetestSummary,
)
from dslam_probe.collection import StaticInventorySource
from dslam_probe.config import EngineConfig
from dslam_probe.exceptions import StoreUnavailableError
from dslam_probe.service import ConnectivityService


@pytest.fixture
def temp_db():
    """Create temporary database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        yield Path(f.name)
    # Cleanup
    Path(f.name).unlink(missing_ok=True)
    Path(f.name).with_suffix(".db-wal").unlink(missing_ok=True)
    Path(f.name).with_suffix(".db-shm").unlink(missing_ok=True)


@pytest.fixture
def config(temp_db):
    """Engine config with temp database and no pauses."""
    return EngineConfig(db_path=temp_db, batch_delay_ms=0, department_delay_ms=0, departments=["76", "14"])


class FakeProber:
    """Prober answering from a set of reachable device ids."""

    def __init__(self, reachable=()):
        self.reachable = set(reachable)

    async def test_device_connectivity(self, device):
        up = device.device_id in self.reachable
        return ConnectivityTestResult(
            device_id=device.device_id,
            parent_id=device.parent_id,
            ipv4_reachable=up,
            ipv4_ping_reachable=up,
            is_reachable=up,
            response_time_ms=40.0 if up else None,
            score=35 if up else 0,
            quality=NetworkQuality.POOR if up else NetworkQuality.UNAVAILABLE,
        )


@pytest.fixture
def source():
    return StaticInventorySource({
        "76": [
            DeviceRecord(device_id="D1", parent_id="N1", city="ROUEN", ipv4="10.0.0.1", ipv6="N/A"),
            DeviceRecord(device_id="D2", parent_id="N1", city="ROUEN", ipv4="10.0.0.2"),
            DeviceRecord(device_id="D3", parent_id="N2", city="YVETOT", ipv4="10.0.0.3"),
        ],
    })


@pytest.fixture
def service(config, source):
    return ConnectivityService(config, source=source, prober=FakeProber(reachable={"D1", "D3"}))


def body(response):
    return json.loads(response.text)


class TestServiceInit:
    """Tests for service initialization."""

    def test_creates_store(self, config):
        service = ConnectivityService(config)

        assert service.store.get_device_counts()["devices"] == 0
        assert service.source is None

    def test_inventory_path_gives_file_source(self, config, tmp_path):
        config.inventory_path = tmp_path / "inventory.yaml"
        service = ConnectivityService(config)
        assert service.source.name.startswith("file:")


class TestRunFullProcess:
    """Tests for the full collect, probe and report run."""

    @pytest.mark.asyncio
    async def test_full_run(self, service):
        result = await service.run_full_process()

        assert result.collection.departments == 2
        assert result.collection.devices_collected == 3
        assert [u.success for u in result.collection.units] == [True, False]
        assert result.probing.processed == 3
        assert result.probing.reachable == 2
        assert result.statistics.total_tested == 3
        assert result.statistics.global_reachability_rate == 67
        assert result.statistics.quality_breakdown["unavailable"] == 1
        assert result.ended_at is not None
        assert service.last_result is result

        n1 = service.store.get_parent_node("N1")
        assert n1.functional is True
        assert n1.functional_rate == 50
        assert n1.ipv4 == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_without_source_probes_stored_inventory(self, config):
        service = ConnectivityService(config, prober=FakeProber())
        service.store.upsert_device(DeviceRecord(device_id="D9", ipv4="10.9.9.9"))

        result = await service.run_full_process()

        assert result.collection.departments == 0
        assert result.probing.processed == 1

    @pytest.mark.asyncio
    async def test_store_unavailable_aborts(self, config, source):
        store = MagicMock()
        store.find_devices.side_effect = StoreUnavailableError("gone")
        service = ConnectivityService(config, store=store, prober=FakeProber())

        with pytest.raises(StoreUnavailableError):
            await service.run_full_process()

    @pytest.mark.asyncio
    async def test_retest_failed(self, service):
        await service.run_full_process()
        service.scheduler.prober = FakeProber(reachable={"D1", "D2", "D3"})

        summary = await service.retest_failed(max_count=10)

        assert summary.retested == 1
        assert summary.newly_functional == 1
        assert service.store.get_parent_node("N1").functional_rate == 100


class TestApiHandlers:
    """Tests for the HTTP API handlers."""

    @pytest.mark.asyncio
    async def test_health(self, service):
        await service.run_full_process()

        response = await service._handle_health(MagicMock())

        data = body(response)
        assert data["status"] == "ok"
        assert data["devices"] == 3
        assert data["functional"] == 2
        assert data["parent_nodes"] == 2
        assert data["running"] is False
        assert data["last_run"] is not None

    @pytest.mark.asyncio
    async def test_summary(self, service):
        await service.run_full_process()

        response = await service._handle_summary(MagicMock())

        data = body(response)
        assert data["departments"]["76"]["reachable_count"] == 2
        assert data["departments"]["76"]["reachability_rate"] == 67
        assert "Normandie" in data["regions"]
        assert data["quality"] == {"excellent": 0, "good": 0, "poor": 2, "unavailable": 1}
        assert data["problem_areas"][0]["parent_id"] == "N1"

    @pytest.mark.asyncio
    async def test_parent_node(self, service):
        await service.run_full_process()
        request = MagicMock()
        request.match_info = {"parent_id": "N1"}

        response = await service._handle_parent_node(request)

        data = body(response)
        assert data["parent_id"] == "N1"
        assert data["functional"] is True
        assert data["zone"] == "urban"
        assert [d["device_id"] for d in data["devices"]] == ["D1", "D2"]
        assert data["devices"][0]["last_quality"] == "poor"

    @pytest.mark.asyncio
    async def test_parent_node_not_found(self, service):
        request = MagicMock()
        request.match_info = {"parent_id": "ghost"}

        response = await service._handle_parent_node(request)

        assert response.status == 404

    @pytest.mark.asyncio
    async def test_retest_triggered(self, service):
        request = MagicMock()
        request.body_exists = True
        request.json = AsyncMock(return_value={"max_count": 5})

        with patch.object(service, "retest_failed", AsyncMock(return_value=RetestSummary())) as retest:
            response = await service._handle_retest(request)
            await service._background

        assert body(response)["status"] == "started"
        retest.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_retest_bad_count(self, service):
        request = MagicMock()
        request.body_exists = True
        request.json = AsyncMock(return_value={"max_count": 0})

        response = await service._handle_retest(request)

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_retest_busy(self, service):
        request = MagicMock()
        request.body_exists = False

        async with service._run_lock:
            response = await service._handle_retest(request)

        assert response.status == 409

    @pytest.mark.asyncio
    async def test_retest_failure_logged(self, service, caplog):
        request = MagicMock()
        request.body_exists = False
        failing = AsyncMock(side_effect=StoreUnavailableError("gone"))

        with caplog.at_level(logging.ERROR, logger="dslam_probe.service"):
            with patch.object(service, "retest_failed", failing):
                await service._handle_retest(request)
                await asyncio.wait([service._background])
                await asyncio.sleep(0)

        assert "Background retest failed" in caplog.text

    @pytest.mark.asyncio
    async def test_summary_families(self, service):
        await service.run_full_process()

        data = body(await service._handle_summary(MagicMock()))

        assert data["families"]["total"] == 3
        assert data["families"]["ipv4_only"] == 2
        assert data["families"]["both"] == 0
        assert data["departments"]["76"]["udp_reachable"] == 0
        assert data["departments"]["76"]["average_response_time_ms"] == 40

    def test_routes(self, service):
        app = service.create_app()
        paths = {r.resource.canonical for r in app.router.routes()}
        assert {"/api/health", "/api/summary", "/api/parent-nodes/{parent_id}", "/api/retest"} <= paths


class TestStop:
    """Tests for shutdown."""

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_batches(self, service):
        await service.stop()

        assert service._cancel_event.is_set()
        summary = await service.scheduler.probe_population()
        assert summary.processed == 0 or summary.cancelled
