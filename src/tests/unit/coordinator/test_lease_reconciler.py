"""Unit tests for LeaseReconciler."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from agentlab.control.coordinator.lease import LeaseReconciler
from agentlab.core.clock import FixedClock
from agentlab.core.domain import EventKind, SandboxState
from agentlab.infra.sqlite import Store
from agentlab.services import event_service, sandbox_service


async def _sandbox(store: Store, vmid: int, expires_in: timedelta | None, state=SandboxState.RUNNING, now=None):
    async with store.session() as db:
        await sandbox_service.create_sandbox(
            db,
            vmid,
            f"sandbox-{vmid}",
            "ubuntu",
            state=state,
            lease_expires_at=now + expires_in if expires_in is not None else None,
            now=now,
        )


class TestTick:
    @pytest.mark.asyncio
    async def test_expires_in_vmid_order(self, store: Store, clock: FixedClock) -> None:
        now = clock.now()
        await _sandbox(store, 1002, -timedelta(minutes=1), now=now)
        await _sandbox(store, 1001, timedelta(0), now=now)
        await _sandbox(store, 1003, timedelta(minutes=5), now=now)
        await _sandbox(store, 1004, None, now=now)
        await _sandbox(store, 1005, -timedelta(hours=1), state=SandboxState.DESTROYED, now=now)
        expire = AsyncMock()

        await LeaseReconciler(store, expire, clock=clock).tick()

        assert [c.args[0] for c in expire.await_args_list] == [1001, 1002]
        async with store.session() as db:
            events = await event_service.list_events_by_sandbox(db, 1002)
        assert [e.kind for e in events] == [EventKind.SANDBOX_LEASE_EXPIRED.value]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_batch(self, store: Store, clock: FixedClock) -> None:
        now = clock.now()
        await _sandbox(store, 1001, -timedelta(minutes=1), now=now)
        await _sandbox(store, 1002, -timedelta(minutes=1), now=now)
        expire = AsyncMock(side_effect=[RuntimeError("hypervisor down"), None])

        await LeaseReconciler(store, expire, clock=clock).tick()

        assert expire.await_count == 2

    @pytest.mark.asyncio
    async def test_nothing_expired(self, store: Store, clock: FixedClock) -> None:
        await _sandbox(store, 1001, timedelta(minutes=5), now=clock.now())
        expire = AsyncMock()

        await LeaseReconciler(store, expire, clock=clock).tick()

        expire.assert_not_awaited()
