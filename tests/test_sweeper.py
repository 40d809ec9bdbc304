"""Tests for the pending-binding sweep loop."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from domainkeeper.domains import start_sweep_task


def _orchestrator(sweep_interval: float = 60.0) -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.config.orchestrator.sweep_interval = sweep_interval
    orchestrator.sweep_pending = AsyncMock(
        return_value={"checked": 1, "activated": 0, "failed": 0, "errors": 0}
    )
    return orchestrator


class TestSweepLoop:
    """Tests for run_sweep_loop and start_sweep_task."""

    @pytest.mark.asyncio
    async def test_sweeps_repeatedly(self):
        """Test that the loop keeps sweeping until cancelled."""
        orchestrator = _orchestrator()

        task = start_sweep_task(orchestrator, interval=0.01)
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.sweep_pending.await_count >= 2

    @pytest.mark.asyncio
    async def test_uses_configured_interval(self):
        """Test that the config interval applies when none is given."""
        orchestrator = _orchestrator(sweep_interval=3600)

        task = start_sweep_task(orchestrator)
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.sweep_pending.await_count == 1

    @pytest.mark.asyncio
    async def test_survives_sweep_errors(self):
        """Test that a failing sweep does not stop the loop."""
        orchestrator = _orchestrator()
        calls = []

        async def sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("store unavailable")
            return {"checked": 0, "activated": 0, "failed": 0, "errors": 0}

        orchestrator.sweep_pending.side_effect = sweep

        task = start_sweep_task(orchestrator, interval=0.01)
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.sweep_pending.await_count >= 2
