"""Tests for run_control_plane."""

import asyncio
from unittest.mock import MagicMock

import pytest

from agentlab.control import run_control_plane
from agentlab.control.coordinator import CoordinatorBase


class IdleCoordinator(CoordinatorBase):
    INTERVAL = 60.0
    MIN_INTERVAL = 0.0

    def __init__(self) -> None:
        super().__init__()
        self.ticks = 0

    async def tick(self) -> None:
        self.ticks += 1


class TestRunControlPlane:
    @pytest.mark.asyncio
    async def test_cancel_stops_all(self) -> None:
        coordinators = [IdleCoordinator(), IdleCoordinator()]
        task = asyncio.create_task(run_control_plane(coordinators))
        async with asyncio.timeout(2):
            while not all(c.ticks for c in coordinators):
                await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not any(c.is_running for c in coordinators)

    @pytest.mark.asyncio
    async def test_crash_is_logged_and_others_stopped(self) -> None:
        healthy = IdleCoordinator()
        broken = MagicMock(spec=CoordinatorBase)
        broken.run.side_effect = RuntimeError("boom")

        await asyncio.wait_for(run_control_plane([broken, healthy]), timeout=2)

        broken.stop.assert_called_once()
        assert not healthy.is_running
        # let the healthy loop observe the stop
        await asyncio.sleep(0.05)
