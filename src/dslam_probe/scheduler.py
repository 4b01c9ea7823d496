"""
Batch scheduler.

Walks a device population in fixed-size batches. Devices inside a batch
are probed concurrently; batches run one after another with a pause in
between. Failures are contained at the smallest unit that can absorb
them: a device that cannot be probed or persisted gets a worst-case
result, a batch whose roll-up fails is recorded as a failed unit, and the
run moves on. Only a store that cannot deliver the population at all
aborts the run.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable, Optional, Sequence

from ._types import (
    BatchRunSummary,
    ConnectivityTestResult,
    DeviceFilter,
    DeviceRecord,
    FailureKind,
    FailureRecord,
    RetestSummary,
    UnitKind,
    UnitOutcome,
    now_utc,
    percent,
)
from .aggregator import Aggregator
from .config import EngineConfig
from .prober import DeviceProber
from .store import DeviceStore

logger = logging.getLogger(__name__)


class BatchScheduler:
    """
    Runs the prober over device populations in bounded batches.

    Args:
        store: Device store used for population queries and persistence
        prober: Per-device prober
        aggregator: Parent-node roll-up (defaults to one over the same store)
        config: Engine configuration (batch size, delays)
        cancel_event: When set, the run stops before the next batch
    """

    def __init__(
        self,
        store: DeviceStore,
        prober: DeviceProber,
        aggregator: Optional[Aggregator] = None,
        config: Optional[EngineConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.prober = prober
        self.aggregator = aggregator or Aggregator(store)
        self.config = config or EngineConfig()
        self.cancel_event = cancel_event
        self._sleep = sleep

    async def _probe_device(self, device: DeviceRecord) -> ConnectivityTestResult:
        """
        Probe and persist one device; any failure yields a worst-case result.

        The cached status is written before history. When persistence fails
        the worst-case result replaces the cached status, so the store never
        reports a device as functional that the run counted as failed.
        """
        try:
            result = await self.prober.test_device_connectivity(device)
        except Exception as e:
            logger.error(f"Probing {device.device_id} failed: {e}")
            result = ConnectivityTestResult.worst_case(device, e)

        try:
            self.store.update_device_status(result)
            self.store.append_history(result)
        except Exception as e:
            logger.error(f"Persisting result of {device.device_id} failed: {e}")
            result = ConnectivityTestResult.worst_case(device, f"persist failed: {e}")
            try:
                self.store.update_device_status(result)
            except Exception as status_error:
                logger.error(f"Recording worst case for {device.device_id} failed: {status_error}")

        return result

    async def _probe_batch(self, batch: Sequence[DeviceRecord]) -> list[ConnectivityTestResult]:
        outcomes = await asyncio.gather(
            *(self._probe_device(device) for device in batch),
            return_exceptions=True,
        )
        results = []
        for device, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected error on {device.device_id}: {outcome}")
                outcome = ConnectivityTestResult.worst_case(device, outcome)
            results.append(outcome)
        return results

    async def run_batch_probe(
        self,
        devices: Sequence[DeviceRecord],
        batch_size: Optional[int] = None,
    ) -> BatchRunSummary:
        """
        Probe devices in population order, batch by batch.

        Every device of every started batch is counted as processed, even
        when its probes or its batch failed.
        """
        size = batch_size or self.config.batch_size
        if size < 1:
            raise ValueError(f"batch_size must be >= 1, got {size}")

        batches = [devices[i:i + size] for i in range(0, len(devices), size)]
        summary = BatchRunSummary()
        logger.info(f"Probing {len(devices)} devices in {len(batches)} batches of {size}")

        for index, batch in enumerate(batches, start=1):
            if self.cancel_event is not None and self.cancel_event.is_set():
                logger.warning(f"Run cancelled before batch {index}/{len(batches)}")
                summary.cancelled = True
                break

            unit = UnitOutcome(unit=UnitKind.BATCH, key=str(index), items_processed=len(batch))
            results = await self._probe_batch(batch)
            batch_reachable = sum(1 for r in results if r.is_reachable)

            for r in results:
                if r.failure == FailureKind.DEVICE_FAILURE:
                    unit.errors.append(
                        FailureRecord(FailureKind.DEVICE_FAILURE, r.device_id, r.error_details or "")
                    )

            try:
                parent_ids = {d.parent_id for d in batch if d.parent_id}
                self.aggregator.refresh_parent_nodes(parent_ids)
                unit.items_successful = batch_reachable
                unit.items_failed = len(batch) - batch_reachable
            except Exception as e:
                logger.error(f"Batch {index}/{len(batches)} failed: {e}")
                unit.success = False
                unit.items_successful = 0
                unit.items_failed = len(batch)
                unit.errors.append(FailureRecord(FailureKind.UNIT_FAILURE, str(index), str(e)))

            unit.ended_at = now_utc()
            summary.units.append(unit)
            summary.results.extend(results)
            summary.batches += 1
            summary.processed += len(batch)
            summary.reachable += batch_reachable
            summary.failed += len(batch) - batch_reachable

            logger.info(
                f"Batch {index}/{len(batches)}: {batch_reachable}/{len(batch)} reachable "
                f"(total {summary.reachable}/{summary.processed}, {summary.reachability_rate}%)"
            )

            if index < len(batches):
                await self._sleep(self.config.batch_delay_s)

        return summary

    async def probe_population(
        self,
        device_filter: Optional[DeviceFilter] = None,
        batch_size: Optional[int] = None,
    ) -> BatchRunSummary:
        """Load the population from the store and probe it."""
        devices = self.store.find_devices(device_filter)
        if not devices:
            logger.info("No devices to probe")
            return BatchRunSummary()
        return await self.run_batch_probe(devices, batch_size)

    async def retest(
        self,
        device_filter: Optional[DeviceFilter] = None,
        max_count: Optional[int] = None,
    ) -> RetestSummary:
        """
        Probe again a bounded set of devices, by default the non-functional ones.

        A device counts as newly functional only if it was not functional
        before the retest; every other device counts as still failed.

        Args:
            device_filter: Devices to retest (default: functional=False)
            max_count: Upper bound on devices retested

        Returns:
            RetestSummary with newly_functional + still_failed == retested
        """
        if max_count is None:
            max_count = self.config.retest_max_count
        if max_count < 0:
            raise ValueError(f"max_count must be >= 0, got {max_count}")
        device_filter = device_filter or DeviceFilter(functional=False)
        limit = max_count if device_filter.limit is None else min(device_filter.limit, max_count)
        device_filter = dataclasses.replace(device_filter, limit=limit)

        devices = self.store.find_devices(device_filter)[:max_count] if max_count else []
        if not devices:
            logger.info("No devices to retest")
            return RetestSummary()

        was_functional = {d.device_id: d.functional for d in devices}
        logger.info(f"Retesting {len(devices)} devices")
        run = await self.run_batch_probe(devices)

        retested = len(run.results)
        newly_functional = sum(
            1 for r in run.results if r.is_reachable and not was_functional.get(r.device_id, False)
        )
        summary = RetestSummary(
            retested=retested,
            newly_functional=newly_functional,
            still_failed=retested - newly_functional,
            improved_rate_percent=percent(newly_functional, retested),
        )
        logger.info(
            f"Retest complete: {summary.newly_functional}/{summary.retested} now functional "
            f"({summary.improved_rate_percent}%)"
        )
        return summary
