"""Tests for WorkspaceLeaseManager."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from agentlab.control.workspace_lease import WorkspaceLeaseManager
from agentlab.core.clock import FixedClock
from agentlab.core.domain import EventKind
from agentlab.core.errors import ConflictError, NotFoundError, WorkspaceLeaseHeldError
from agentlab.infra.models import Workspace
from agentlab.infra.sqlite import Store
from agentlab.services import event_service, workspace_service


@pytest.fixture
def leases(store: Store, clock: FixedClock) -> WorkspaceLeaseManager:
    return WorkspaceLeaseManager(store, clock=clock, ttl=timedelta(minutes=10))


class TestAcquire:
    @pytest.mark.asyncio
    async def test_acquire(
        self, store: Store, leases: WorkspaceLeaseManager, workspace: Workspace, clock: FixedClock
    ) -> None:
        lease = await leases.acquire("ws_1", "job:job_1", job_id="job_1")
        assert lease.expires_at == clock.now() + timedelta(minutes=10)
        async with store.session() as db:
            ws = await workspace_service.get_workspace(db, "ws_1")
            events = await event_service.list_events_by_job(db, "job_1")
        assert (ws.lease_owner, ws.lease_nonce) == ("job:job_1", lease.nonce)
        assert [e.kind for e in events] == [EventKind.WORKSPACE_LEASE_ACQUIRED.value]

    @pytest.mark.asyncio
    async def test_held_by_other(self, leases: WorkspaceLeaseManager, workspace: Workspace) -> None:
        await leases.acquire("ws_1", "job:a")
        with pytest.raises(WorkspaceLeaseHeldError, match="job:a"):
            await leases.acquire("ws_1", "job:b")

    @pytest.mark.asyncio
    async def test_missing_workspace(self, leases: WorkspaceLeaseManager) -> None:
        with pytest.raises(NotFoundError):
            await leases.acquire("ws_missing", "job:a")

    @pytest.mark.asyncio
    async def test_takeover_after_expiry(
        self, leases: WorkspaceLeaseManager, workspace: Workspace, clock: FixedClock
    ) -> None:
        first = await leases.acquire("ws_1", "job:a")
        clock.advance(timedelta(minutes=10))
        second = await leases.acquire("ws_1", "job:b")
        assert second.owner == "job:b"
        with pytest.raises(ConflictError):
            await leases.renew(first)


class TestRenewRelease:
    @pytest.mark.asyncio
    async def test_renew_extends(
        self, leases: WorkspaceLeaseManager, workspace: Workspace, clock: FixedClock
    ) -> None:
        lease = await leases.acquire("ws_1", "job:a")
        clock.advance(timedelta(minutes=5))
        renewed = await leases.renew(lease)
        assert renewed.nonce == lease.nonce
        assert renewed.expires_at == clock.now() + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_release_only_once(self, leases: WorkspaceLeaseManager, workspace: Workspace) -> None:
        lease = await leases.acquire("ws_1", "job:a")
        assert await leases.release(lease)
        assert not await leases.release(lease)


class TestKeepAlive:
    @pytest.mark.asyncio
    async def test_stops_when_lease_lost(
        self, leases: WorkspaceLeaseManager, workspace: Workspace
    ) -> None:
        lease = await leases.acquire("ws_1", "job:a")
        await leases.release(lease)
        with patch("agentlab.control.workspace_lease.renew_interval", return_value=timedelta(0)):
            # returns instead of looping forever
            await asyncio.wait_for(leases.keep_alive(lease), timeout=5)

    @pytest.mark.asyncio
    async def test_task_can_be_cancelled(
        self, leases: WorkspaceLeaseManager, workspace: Workspace
    ) -> None:
        lease = await leases.acquire("ws_1", "job:a")
        task = leases.start_keep_alive(lease)
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_survives_transient_renew_error(
        self, leases: WorkspaceLeaseManager, workspace: Workspace
    ) -> None:
        lease = await leases.acquire("ws_1", "job:a")
        busy = OperationalError("UPDATE workspaces", {}, Exception("database is locked"))
        renew = AsyncMock(side_effect=[busy, lease, ConflictError("lost")])
        with (
            patch("agentlab.control.workspace_lease.renew_interval", return_value=timedelta(0)),
            patch.object(leases, "renew", new=renew),
        ):
            await asyncio.wait_for(leases.keep_alive(lease), timeout=5)
        assert renew.await_count == 3

    @pytest.mark.asyncio
    async def test_stop_keep_alive_waits_for_task(
        self, leases: WorkspaceLeaseManager, workspace: Workspace
    ) -> None:
        lease = await leases.acquire("ws_1", "job:a")
        task = leases.start_keep_alive(lease)
        await asyncio.sleep(0)
        await leases.stop_keep_alive(task)
        assert task.cancelled()


class TestStoredLease:
    @pytest.mark.asyncio
    async def test_release_stored(
        self, store: Store, leases: WorkspaceLeaseManager, workspace: Workspace
    ) -> None:
        await leases.acquire("ws_1", "job:job_1")
        fresh = WorkspaceLeaseManager(store, ttl=timedelta(minutes=10))
        assert await fresh.release_stored("ws_1", "job:job_1")
        async with store.session() as db:
            ws = await workspace_service.get_workspace(db, "ws_1")
        assert (ws.lease_owner, ws.lease_nonce, ws.lease_expires_at) == (None, None, None)

    @pytest.mark.asyncio
    async def test_release_stored_other_owner(
        self, store: Store, leases: WorkspaceLeaseManager, workspace: Workspace
    ) -> None:
        await leases.acquire("ws_1", "session:sess_1")
        assert not await leases.release_stored("ws_1", "job:job_1")
        assert not await leases.release_stored("ws_missing", "job:job_1")
        async with store.session() as db:
            ws = await workspace_service.get_workspace(db, "ws_1")
        assert ws.lease_owner == "session:sess_1"

    @pytest.mark.asyncio
    async def test_adopt(
        self, leases: WorkspaceLeaseManager, workspace: Workspace, clock: FixedClock
    ) -> None:
        held = await leases.acquire("ws_1", "session:sess_1")
        adopted = await leases.adopt("ws_1", "session:sess_1")
        assert adopted == held
        assert await leases.adopt("ws_1", "session:sess_2") is None

        clock.advance(timedelta(minutes=10))
        assert await leases.adopt("ws_1", "session:sess_1") is None
