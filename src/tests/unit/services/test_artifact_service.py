"""Tests for the artifact registry and retention candidates."""

from datetime import timedelta

import pytest

from agentlab.core.clock import FixedClock
from agentlab.core.domain import JobStatus, SandboxState
from agentlab.core.errors import ForeignKeyError, NotFoundError, ValidationError
from agentlab.infra.sqlite import Store
from agentlab.services import artifact_service, job_service, sandbox_service

SHA = "a" * 64


async def _job(store: Store, job_id: str = "job_1", vmid: int | None = None) -> None:
    async with store.session() as db:
        await job_service.create_job(db, job_id, "https://x/r.git", "main", "ubuntu")
        if vmid is not None:
            await sandbox_service.create_sandbox(db, vmid, f"sb-{vmid}", "ubuntu")
            await job_service.update_job_sandbox(db, job_id, vmid)


class TestCreateArtifact:
    @pytest.mark.asyncio
    async def test_create_and_list(self, store: Store) -> None:
        await _job(store)
        async with store.session() as db:
            created = await artifact_service.create_artifact(
                db, "job_1", "out.txt", "out.txt", 12, SHA.upper(), vmid=1001
            )
        async with store.session() as db:
            listed = await artifact_service.list_artifacts_by_job(db, "job_1")
            fetched = await artifact_service.get_artifact(db, created.id)
        assert [a.id for a in listed] == [created.id]
        assert fetched.sha256 == SHA

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "name, size, sha",
        [("", 1, SHA), ("a", 0, SHA), ("a", 1, "abc"), ("a", 1, "z" * 64)],
    )
    async def test_validation(self, store: Store, name: str, size: int, sha: str) -> None:
        async with store.session() as db:
            with pytest.raises(ValidationError):
                await artifact_service.create_artifact(db, "job_1", name, "a", size, sha)

    @pytest.mark.asyncio
    async def test_requires_job(self, store: Store) -> None:
        async with store.session() as db:
            with pytest.raises(ForeignKeyError):
                await artifact_service.create_artifact(db, "job_x", "a", "a", 1, SHA)

    @pytest.mark.asyncio
    async def test_job_delete_cascades(self, store: Store) -> None:
        await _job(store)
        async with store.session() as db:
            created = await artifact_service.create_artifact(db, "job_1", "a", "a", 1, SHA)
            await job_service.delete_job(db, "job_1")
        async with store.session() as db:
            with pytest.raises(NotFoundError):
                await artifact_service.get_artifact(db, created.id)

    @pytest.mark.asyncio
    async def test_delete_missing(self, store: Store) -> None:
        async with store.session() as db:
            with pytest.raises(NotFoundError):
                await artifact_service.delete_artifact(db, 12345)


class TestRetentionCandidates:
    @pytest.mark.asyncio
    async def test_joins_job_and_sandbox(self, store: Store, clock: FixedClock) -> None:
        await _job(store, "job_1", vmid=1001)
        await _job(store, "job_2")
        async with store.session() as db:
            await job_service.update_job_status(
                db, "job_1", JobStatus.COMPLETED, now=clock.now() + timedelta(minutes=1)
            )
            await sandbox_service.transition_state(
                db, 1001, SandboxState.REQUESTED, SandboxState.FAILED
            )
            await artifact_service.create_artifact(db, "job_1", "a", "a", 1, SHA)
            await artifact_service.create_artifact(db, "job_2", "b", "b", 1, SHA, vmid=2002)

        async with store.session() as db:
            records = await artifact_service.list_retention_candidates(db)

        first, second = records
        assert first.job_status == "COMPLETED"
        assert first.job_profile == "ubuntu"
        assert first.job_updated_at == clock.now() + timedelta(minutes=1)
        assert (first.sandbox_vmid, first.sandbox_state) == (1001, "FAILED")
        # artifact vmid is used when the job has none; the sandbox row is absent
        assert (second.sandbox_vmid, second.sandbox_state) == (2002, None)
