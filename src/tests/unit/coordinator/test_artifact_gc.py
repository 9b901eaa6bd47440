"""Unit tests for ArtifactGC."""

from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agentlab.app.profiles import Profile
from agentlab.control.coordinator.artifact_gc import ArtifactGC, is_expired
from agentlab.core.clock import FixedClock
from agentlab.core.domain import EventKind, JobStatus, SandboxState
from agentlab.infra.sqlite import Store
from agentlab.services import artifact_service, event_service, job_service, sandbox_service
from agentlab.services.artifact_service import RetentionRecord

SHA = "a" * 64
HOUR = timedelta(hours=1)


def _record(now, status="COMPLETED", sandbox_state=SandboxState.DESTROYED.value, updated_at=None):
    return RetentionRecord(
        artifact=MagicMock(created_at=now),
        job_profile="ubuntu",
        job_status=status,
        job_updated_at=updated_at,
        sandbox_vmid=1000,
        sandbox_state=sandbox_state,
    )


class TestIsExpired:
    def test_expired_at_boundary(self, clock: FixedClock) -> None:
        t0 = clock.now()
        assert is_expired(_record(t0), HOUR, t0 + HOUR)
        assert not is_expired(_record(t0), HOUR, t0 + HOUR - timedelta(seconds=1))

    def test_job_updated_at_wins(self, clock: FixedClock) -> None:
        t0 = clock.now()
        record = _record(t0, updated_at=t0 + HOUR)
        assert not is_expired(record, HOUR, t0 + HOUR)
        assert is_expired(record, HOUR, t0 + 2 * HOUR)

    def test_live_job_kept(self, clock: FixedClock) -> None:
        t0 = clock.now()
        assert not is_expired(_record(t0, status="RUNNING"), HOUR, t0 + 10 * HOUR)

    def test_live_sandbox_kept(self, clock: FixedClock) -> None:
        t0 = clock.now()
        record = _record(t0, sandbox_state=SandboxState.STOPPED.value)
        assert not is_expired(record, HOUR, t0 + 10 * HOUR)

    def test_missing_sandbox_allowed(self, clock: FixedClock) -> None:
        t0 = clock.now()
        assert is_expired(_record(t0, sandbox_state=None), HOUR, t0 + HOUR)


@pytest.fixture
def gc_profiles() -> dict[str, Profile]:
    return {
        "ubuntu": Profile(name="ubuntu", template_vmid=9000, artifact_retention=HOUR),
        "forever": Profile(name="forever", template_vmid=9001),
    }


async def _seed(store: Store, clock: FixedClock, root: Path, job_id: str, profile: str, vmid: int) -> Path:
    now = clock.now()
    async with store.session() as db:
        await sandbox_service.create_sandbox(
            db, vmid, f"sandbox-{vmid}", profile, state=SandboxState.DESTROYED, now=now
        )
        await job_service.create_job(
            db, job_id, "https://example.com/r.git", "main", profile, status=JobStatus.COMPLETED, now=now
        )
        await job_service.update_job_sandbox(db, job_id, vmid, now=now)
        await artifact_service.create_artifact(
            db, job_id, "report.txt", "out/report.txt", 3, SHA, vmid=vmid, now=now
        )
    path = root / job_id / "out" / "report.txt"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"abc")
    return path


class TestTick:
    @pytest.mark.asyncio
    async def test_removes_expired_artifact(
        self, store: Store, clock: FixedClock, tmp_path: Path, gc_profiles: dict[str, Profile]
    ) -> None:
        path = await _seed(store, clock, tmp_path, "job_1", "ubuntu", 1000)
        clock.advance(2 * HOUR)

        await ArtifactGC(store, gc_profiles, tmp_path, clock=clock).tick()

        assert not path.exists()
        async with store.session() as db:
            assert await artifact_service.list_artifacts_by_job(db, "job_1") == []
            events = await event_service.list_events_by_job(db, "job_1")
        assert [e.kind for e in events] == [EventKind.ARTIFACT_GC.value]
        assert event_service.decode_payload(events[0]) == {
            "name": "report.txt",
            "vmid": 1000,
            "path": "out/report.txt",
        }

    @pytest.mark.asyncio
    async def test_keeps_within_retention(
        self, store: Store, clock: FixedClock, tmp_path: Path, gc_profiles: dict[str, Profile]
    ) -> None:
        path = await _seed(store, clock, tmp_path, "job_1", "ubuntu", 1000)
        clock.advance(HOUR / 2)

        await ArtifactGC(store, gc_profiles, tmp_path, clock=clock).tick()

        assert path.exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("profile", ["forever", "unknown"])
    async def test_no_retention_keeps_forever(
        self,
        store: Store,
        clock: FixedClock,
        tmp_path: Path,
        gc_profiles: dict[str, Profile],
        profile: str,
    ) -> None:
        path = await _seed(store, clock, tmp_path, "job_1", profile, 1000)
        clock.advance(1000 * HOUR)

        await ArtifactGC(store, gc_profiles, tmp_path, clock=clock).tick()

        assert path.exists()
        async with store.session() as db:
            assert len(await artifact_service.list_artifacts_by_job(db, "job_1")) == 1

    @pytest.mark.asyncio
    async def test_missing_file_still_deletes_row(
        self, store: Store, clock: FixedClock, tmp_path: Path, gc_profiles: dict[str, Profile]
    ) -> None:
        path = await _seed(store, clock, tmp_path, "job_1", "ubuntu", 1000)
        path.unlink()
        clock.advance(2 * HOUR)

        await ArtifactGC(store, gc_profiles, tmp_path, clock=clock).tick()

        async with store.session() as db:
            assert await artifact_service.list_artifacts_by_job(db, "job_1") == []
