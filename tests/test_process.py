"""Tests for probe process execution."""

import asyncio

import pytest

from dslam_probe.process import ProcessOutcome, probe_process, spawn_probe


class TestSpawnProbe:
    """Tests for spawn_probe with real processes."""

    @pytest.mark.asyncio
    async def test_successful_command(self):
        """Should capture stdout and a zero exit code."""
        outcome = await spawn_probe("echo", ["64 bytes from 10.0.0.1"], 5.0)

        assert outcome.exit_code == 0
        assert "bytes from" in outcome.stdout
        assert outcome.timed_out is False
        assert outcome.error is None
        assert outcome.succeeded is True
        assert outcome.duration_ms > 0

    @pytest.mark.asyncio
    async def test_failing_command(self):
        """Non-zero exit should be reported, not raised."""
        outcome = await spawn_probe("false", [], 5.0)

        assert outcome.exit_code != 0
        assert outcome.timed_out is False
        assert outcome.succeeded is False

    @pytest.mark.asyncio
    async def test_hard_deadline_kills_process(self):
        """A process that never finishes should be killed at the deadline."""
        outcome = await spawn_probe("sleep", ["10"], 0.2)

        assert outcome.timed_out is True
        assert outcome.exit_code is None
        assert outcome.succeeded is False
        assert outcome.duration_ms < 5000

    @pytest.mark.asyncio
    async def test_missing_command(self):
        """A command that cannot be started should be reported as an error."""
        outcome = await spawn_probe("/nonexistent/dslam-probe-tool", [], 1.0)

        assert outcome.exit_code is None
        assert outcome.error is not None
        assert outcome.timed_out is False


class TestProbeProcess:
    """Tests for scoped process acquisition."""

    @pytest.mark.asyncio
    async def test_process_reaped_on_early_exit(self):
        """Leaving the context should kill and reap a running child."""
        async with probe_process("sleep", ["10"]) as process:
            assert process.returncode is None

        assert process.returncode is not None

    @pytest.mark.asyncio
    async def test_process_reaped_on_cancellation(self):
        """Cancelling the owning task should still reap the child."""
        holder = {}

        async def run():
            async with probe_process("sleep", ["10"]) as process:
                holder["process"] = process
                await process.wait()

        task = asyncio.create_task(run())
        await asyncio.sleep(0.2)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert holder["process"].returncode is not None

    @pytest.mark.asyncio
    async def test_process_reaped_on_error(self):
        """An exception inside the context should not leak the child."""
        with pytest.raises(RuntimeError):
            async with probe_process("sleep", ["10"]) as process:
                raise RuntimeError("boom")

        assert process.returncode is not None


class TestProcessOutcome:
    """Tests for ProcessOutcome."""

    def test_succeeded_requires_zero_exit(self):
        assert ProcessOutcome(exit_code=0).succeeded is True
        assert ProcessOutcome(exit_code=1).succeeded is False
        assert ProcessOutcome(exit_code=None, timed_out=True).succeeded is False
