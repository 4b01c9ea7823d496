"""
DSLAM connectivity service - orchestration and status API.

Runs the three phases of a full pass (inventory collection, population
probe, final statistics), exposes retest as an explicit bounded retry and
serves a small read-mostly HTTP API over the store.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from aiohttp import web

from ._types import (
    CollectionSummary,
    DeviceFilter,
    FamilyCounts,
    GlobalProcessingResult,
    RetestSummary,
    now_utc,
)
from .aggregator import Aggregator
from .collection import FileInventorySource, InventoryCollector, InventorySource
from .config import EngineConfig, load_config
from .exceptions import DslamProbeError
from .prober import DeviceProber
from .scheduler import BatchScheduler
from .store import DeviceStore, SqliteDeviceStore

logger = logging.getLogger(__name__)


def _json_default(value):
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


def _to_dict(obj) -> dict:
    """Dataclass to JSON-safe dict (enums by value, datetimes in ISO format)."""
    raw = dataclasses.asdict(obj)
    return {k: _jsonable(v) for k, v in raw.items()}


def _jsonable(value):
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return _json_default(value)


class ConnectivityService:
    """
    DSLAM connectivity service.

    Wires store, prober, scheduler, aggregator and collector together.
    """

    def __init__(
        self,
        config: EngineConfig,
        store: Optional[DeviceStore] = None,
        source: Optional[InventorySource] = None,
        prober: Optional[DeviceProber] = None,
    ):
        """
        Initialize the service.

        Args:
            config: Engine configuration
            store: Device store (default: SQLite at config.db_path)
            source: Inventory source (default: config.inventory_path if set)
            prober: Device prober (default: real ping/nc probes)
        """
        self.config = config
        self.store = store or SqliteDeviceStore(config.db_path)
        self.geography = config.load_geography()

        if source is None and config.inventory_path:
            source = FileInventorySource(config.inventory_path)
        self.source = source

        self.aggregator = Aggregator(self.store)
        self._cancel_event = asyncio.Event()
        self.scheduler = BatchScheduler(
            self.store,
            prober or DeviceProber(config),
            aggregator=self.aggregator,
            config=config,
            cancel_event=self._cancel_event,
        )

        self._run_lock = asyncio.Lock()
        self._background: Optional[asyncio.Task] = None
        self.last_result: Optional[GlobalProcessingResult] = None
        self.last_retest: Optional[RetestSummary] = None

        self._shutdown_event = asyncio.Event()
        self._api_runner: Optional[web.AppRunner] = None

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def run_full_process(self) -> GlobalProcessingResult:
        """
        Collect inventory, probe the whole population, compute statistics.

        Raises:
            StoreUnavailableError: The population could not be loaded
        """
        async with self._run_lock:
            started_at = now_utc()
            logger.info("Starting full connectivity run")

            if self.source is not None:
                collector = InventoryCollector(self.store, self.source, self.geography, self.config)
                collection = await collector.collect()
            else:
                logger.warning("No inventory source configured, probing stored inventory only")
                collection = CollectionSummary()

            probing = await self.scheduler.probe_population()
            self.aggregator.refresh_parent_nodes()
            statistics = self.aggregator.final_statistics()

            result = GlobalProcessingResult(
                collection=collection,
                probing=probing,
                statistics=statistics,
                started_at=started_at,
                ended_at=now_utc(),
            )
            self.last_result = result
            self._log_report(result)
            return result

    async def retest_failed(self, max_count: Optional[int] = None) -> RetestSummary:
        """Retest currently non-functional devices."""
        async with self._run_lock:
            summary = await self.scheduler.retest(DeviceFilter(functional=False), max_count)
            self.aggregator.refresh_parent_nodes()
            self.last_retest = summary
            return summary

    def _log_report(self, result: GlobalProcessingResult) -> None:
        stats = result.statistics
        failed_departments = [u.key for u in result.collection.units if not u.success]

        logger.info("=" * 60)
        logger.info("CONNECTIVITY REPORT")
        logger.info(
            f"Collection: {result.collection.devices_collected} devices, "
            f"{result.collection.parent_nodes_collected} parent nodes, "
            f"{result.collection.departments} departments"
        )
        if failed_departments:
            logger.warning(f"Departments without data: {', '.join(failed_departments)}")
        logger.info(
            f"Probing: {result.probing.processed} tested, {result.probing.reachable} reachable "
            f"in {result.probing.batches} batches"
        )
        logger.info(
            f"Global reachability {stats.global_reachability_rate}%, "
            f"average score {stats.average_score}"
        )
        logger.info(
            f"IPv4 only {stats.ipv4_only}, IPv6 only {stats.ipv6_only}, both {stats.both}, "
            f"UDP/161 {stats.udp_reachable}, average response {stats.average_response_time_ms} ms"
        )
        for quality, count in stats.quality_breakdown.items():
            logger.info(f"  {quality}: {count}")
        for department, summary in stats.department_summary.items():
            logger.info(
                f"  {department}: {summary.reachable_count}/{summary.count} "
                f"({summary.reachability_rate}%)"
            )
        logger.info(f"Duration: {result.overall_duration_ms / 1000:.1f}s")
        logger.info("=" * 60)

    # -------------------------------------------------------------------------
    # API server
    # -------------------------------------------------------------------------

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/health", self._handle_health)
        app.router.add_get("/api/summary", self._handle_summary)
        app.router.add_get("/api/parent-nodes/{parent_id}", self._handle_parent_node)
        app.router.add_post("/api/retest", self._handle_retest)
        return app

    async def start(self) -> None:
        """Start the API server and wait for shutdown."""
        logger.info("Starting DSLAM connectivity service")
        self._api_runner = web.AppRunner(self.create_app())
        await self._api_runner.setup()
        site = web.TCPSite(self._api_runner, self.config.api_host, self.config.api_port)
        await site.start()
        logger.info(f"API server started on {self.config.api_host}:{self.config.api_port}")
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the service; a running pass stops before its next batch."""
        logger.info("Stopping DSLAM connectivity service")
        self._cancel_event.set()
        self._shutdown_event.set()
        if self._api_runner:
            await self._api_runner.cleanup()
            self._api_runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /api/health."""
        counts = self.store.get_device_counts()
        last = self.last_result

        return web.json_response({
            "status": "ok",
            "service": "dslam-probe",
            "devices": counts["devices"],
            "tested": counts["tested"],
            "functional": counts["functional"],
            "parent_nodes": counts["parent_nodes"],
            "running": self._run_lock.locked(),
            "last_run": last.ended_at.isoformat() if last and last.ended_at else None,
        })

    async def _handle_summary(self, request: web.Request) -> web.Response:
        """Handle GET /api/summary."""
        try:
            return web.json_response({
                "departments": {k: _to_dict(v) for k, v in self.aggregator.department_summary().items()},
                "regions": {k: _to_dict(v) for k, v in self.aggregator.region_summary().items()},
                "quality": self.aggregator.quality_breakdown(),
                "families": _to_dict(self.store.family_counts().get(None) or FamilyCounts(None)),
                "problem_areas": self.aggregator.problem_areas(),
            })
        except DslamProbeError as e:
            return web.json_response({"status": "error", "message": str(e)}, status=500)

    async def _handle_parent_node(self, request: web.Request) -> web.Response:
        """Handle GET /api/parent-nodes/{parent_id}."""
        parent_id = request.match_info["parent_id"]
        try:
            node = self.store.get_parent_node(parent_id)
            if node is None:
                return web.json_response(
                    {"status": "error", "message": f"Parent node {parent_id} not found"},
                    status=404,
                )
            members = self.store.find_devices(DeviceFilter(parent_id=parent_id))
            return web.json_response({
                **_to_dict(node),
                "devices": [
                    {
                        "device_id": d.device_id,
                        "functional": d.functional,
                        "last_score": d.last_score,
                        "last_quality": d.last_quality.value if d.last_quality else None,
                        "last_tested_at": d.last_tested_at.isoformat() if d.last_tested_at else None,
                    }
                    for d in members
                ],
            })
        except DslamProbeError as e:
            return web.json_response({"status": "error", "message": str(e)}, status=500)

    async def _handle_retest(self, request: web.Request) -> web.Response:
        """Handle POST /api/retest."""
        try:
            data = await request.json() if request.body_exists else {}
            max_count = int(data.get("max_count", self.config.retest_max_count))
        except (ValueError, TypeError) as e:
            return web.json_response({"status": "error", "message": str(e)}, status=400)

        if max_count < 1:
            return web.json_response(
                {"status": "error", "message": "max_count must be >= 1"},
                status=400,
            )
        if self._run_lock.locked():
            return web.json_response(
                {"status": "busy", "message": "A run is already in progress"},
                status=409,
            )

        self._background = asyncio.create_task(self.retest_failed(max_count))
        self._background.add_done_callback(self._log_background_failure)
        return web.json_response({
            "status": "started",
            "message": f"Retest of up to {max_count} devices triggered",
        })

    @staticmethod
    def _log_background_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background retest failed: {error}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DSLAM connectivity probe")
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--log-level", type=str, default=None, help="Log level")

    sub = parser.add_subparsers(dest="command", required=True)
    run = sub.add_parser("run", help="Collect inventory, probe every device, report")
    run.add_argument("--inventory", type=str, help="Inventory file (YAML or JSON)")
    run.add_argument("--departments", type=str, help="Comma-separated department codes")

    retest = sub.add_parser("retest", help="Retest non-functional devices")
    retest.add_argument("--max-count", type=int, default=None, help="Devices to retest")

    serve = sub.add_parser("serve", help="Serve the status API")
    serve.add_argument("--host", type=str, default=None, help="API host")
    serve.add_argument("--port", type=int, default=None, help="API port")
    return parser


def main():
    """Entry point for the dslam-probe command."""
    args = _build_parser().parse_args()

    try:
        if args.config:
            config = EngineConfig.from_yaml(Path(args.config))
        else:
            config = load_config()

        if args.log_level:
            config.log_level = args.log_level
        if args.command == "run":
            if args.inventory:
                config.inventory_path = Path(args.inventory)
            if args.departments:
                config.departments = [d.strip() for d in args.departments.split(",") if d.strip()]
        if args.command == "serve":
            if args.host:
                config.api_host = args.host
            if args.port:
                config.api_port = args.port
    except (DslamProbeError, ValueError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        service = ConnectivityService(config)
    except DslamProbeError as e:
        logger.error(f"Startup failed: {e}")
        loop.close()
        sys.exit(1)

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.ensure_future(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    exit_code = 0
    try:
        if args.command == "run":
            loop.run_until_complete(service.run_full_process())
        elif args.command == "retest":
            summary = loop.run_until_complete(service.retest_failed(args.max_count))
            logger.info(
                f"Retested {summary.retested}: {summary.newly_functional} recovered, "
                f"{summary.still_failed} still failing"
            )
        else:
            loop.run_until_complete(service.start())
    except DslamProbeError as e:
        logger.error(f"Run aborted: {e}")
        exit_code = 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.run_until_complete(service.stop())
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
