"""Shared fixtures: a migrated SQLite store per test and a frozen clock."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from agentlab.app.profiles import Profile
from agentlab.core.clock import FixedClock
from agentlab.core.interfaces import Hypervisor
from agentlab.infra.sqlite import Store
from agentlab.services import workspace_service

T0 = datetime(2026, 1, 3, 10, 0, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncIterator[Store]:
    """Fresh migrated database under tmp_path."""
    s = await Store.open(tmp_path / "agentlab.db")
    await s.migrate()
    yield s
    await s.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture
def mock_hypervisor() -> AsyncMock:
    """Hypervisor mock where every call succeeds."""
    hv = AsyncMock(spec=Hypervisor)
    hv.guest_ip = AsyncMock(return_value="10.77.0.10")
    return hv


@pytest.fixture
def profiles() -> dict[str, Profile]:
    return {
        "ubuntu": Profile(
            name="ubuntu",
            template_vmid=9000,
            cores=2,
            memory_mb=2048,
            ttl_minutes=60,
        ),
    }


@pytest_asyncio.fixture
async def workspace(store: Store, clock: FixedClock):
    async with store.session() as db:
        return await workspace_service.create_workspace(
            db, "ws_1", "alpha", "local-zfs", "local-zfs:vm-0-disk-1", 10, now=clock.now()
        )
