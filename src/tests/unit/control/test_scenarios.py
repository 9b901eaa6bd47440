"""End-to-end flows through a wired controller with a mocked hypervisor."""

import hashlib
import json
from collections.abc import AsyncIterator
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from agentlab.app.config import Settings
from agentlab.app.main import Controller, build_controller
from agentlab.control.job_orchestrator import JobRequest
from agentlab.core.clock import FixedClock
from agentlab.core.domain import JobStatus, SandboxState
from agentlab.core.errors import VMNotFoundError, WorkspaceLeaseHeldError
from agentlab.infra.models import Workspace
from agentlab.infra.sqlite import Store
from agentlab.services import artifact_service, job_service, sandbox_service, workspace_service

REPO = "https://example.com/repo.git"

PROFILE_YAML = """\
name: ubuntu
template_vmid: 9000
vm:
  cores: 2
  memory_mb: 4096
behavior:
  ttl_minutes_default: 60
artifacts:
  retention_hours: 1
"""

BUNDLE_YAML = """\
version: 1
env:
  GITHUB_TOKEN: ghp_test
"""


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    profiles_dir = tmp_path / "profiles"
    profiles_dir.mkdir()
    (profiles_dir / "ubuntu.yaml").write_text(PROFILE_YAML)
    secrets_dir = tmp_path / "secrets"
    secrets_dir.mkdir()
    (secrets_dir / "default.yaml").write_text(BUNDLE_YAML)
    return Settings(
        profiles_dir=str(profiles_dir),
        data_dir=str(tmp_path),
        secrets_dir=str(secrets_dir),
        secrets_allow_plaintext=True,
        secrets_age_key_path="",
    )


@pytest_asyncio.fixture
async def controller(
    settings: Settings, store: Store, mock_hypervisor: AsyncMock, clock: FixedClock
) -> AsyncIterator[Controller]:
    ctl = build_controller(settings, store, hypervisor=mock_hypervisor, clock=clock)
    yield ctl
    await ctl.orchestrator.shutdown()


async def _start_job(controller: Controller, workspace_id: str | None = "ws_1"):
    job = await controller.orchestrator.submit(
        JobRequest(repo_url=REPO, profile="ubuntu", workspace_id=workspace_id)
    )
    provisioned = await controller.orchestrator.run_job(job.id)
    response = await controller.bootstrap.handoff(
        provisioned.vmid, provisioned.bootstrap_token, remote_ip="10.77.0.10"
    )
    return provisioned, response


class TestJobLifecycle:
    @pytest.mark.asyncio
    async def test_happy_path_then_retention(
        self,
        controller: Controller,
        store: Store,
        workspace: Workspace,
        clock: FixedClock,
        settings: Settings,
        mock_hypervisor: AsyncMock,
    ) -> None:
        provisioned, response = await _start_job(controller)
        assert response.secrets["env"] == {"GITHUB_TOKEN": "ghp_test"}
        assert response.artifact.endpoint == "http://10.77.0.1:8846/upload"

        content = b"all green\n"
        await controller.artifacts.upload(
            response.artifact.token,
            provisioned.job_id,
            "report.txt",
            len(content),
            hashlib.sha256(content).hexdigest(),
            content,
        )
        await controller.orchestrator.report(
            provisioned.job_id, provisioned.vmid, JobStatus.COMPLETED, message="done"
        )

        async with store.session() as db:
            job = await job_service.get_job(db, provisioned.job_id)
            sandbox = await sandbox_service.get_sandbox(db, provisioned.vmid)
            ws = await workspace_service.get_workspace(db, "ws_1")
        assert job.status == JobStatus.COMPLETED.value
        assert sandbox.state == SandboxState.DESTROYED.value
        assert ws.attached_vmid is None
        assert ws.lease_owner is None
        mock_hypervisor.destroy.assert_awaited_once_with(provisioned.vmid)

        stored = Path(settings.artifact_dir) / provisioned.job_id / "report.txt"
        assert stored.read_bytes() == content

        clock.advance(timedelta(hours=2))
        await controller.artifact_gc.tick()

        assert not stored.exists()
        async with store.session() as db:
            assert await artifact_service.list_artifacts_by_job(db, provisioned.job_id) == []

    @pytest.mark.asyncio
    async def test_workspace_contention(
        self, controller: Controller, store: Store, workspace: Workspace
    ) -> None:
        first = await controller.orchestrator.submit(
            JobRequest(repo_url=REPO, profile="ubuntu", workspace_id="ws_1")
        )
        second = await controller.orchestrator.submit(
            JobRequest(repo_url=REPO, profile="ubuntu", workspace_id="ws_1")
        )
        await controller.orchestrator.run_job(first.id)

        with pytest.raises(WorkspaceLeaseHeldError):
            await controller.orchestrator.run_job(second.id)

        async with store.session() as db:
            loser = await job_service.get_job(db, second.id)
            ws = await workspace_service.get_workspace(db, "ws_1")
        assert loser.status == JobStatus.FAILED.value
        assert loser.sandbox_vmid is None
        assert ws.lease_owner == f"job:{first.id}"

    @pytest.mark.asyncio
    async def test_sandbox_lease_expiry(
        self, controller: Controller, store: Store, workspace: Workspace, clock: FixedClock
    ) -> None:
        provisioned, _ = await _start_job(controller)

        clock.advance(timedelta(minutes=59))
        await controller.lease_reconciler.tick()
        async with store.session() as db:
            sandbox = await sandbox_service.get_sandbox(db, provisioned.vmid)
        assert sandbox.state == SandboxState.RUNNING.value

        clock.advance(timedelta(minutes=2))
        await controller.lease_reconciler.tick()

        async with store.session() as db:
            job = await job_service.get_job(db, provisioned.job_id)
            sandbox = await sandbox_service.get_sandbox(db, provisioned.vmid)
            ws = await workspace_service.get_workspace(db, "ws_1")
        assert job.status == JobStatus.TIMEOUT.value
        assert sandbox.state == SandboxState.DESTROYED.value
        assert ws.lease_owner is None
        assert ws.attached_vmid is None

    @pytest.mark.asyncio
    async def test_expiry_after_restart_releases_workspace_lease(
        self,
        controller: Controller,
        settings: Settings,
        store: Store,
        workspace: Workspace,
        mock_hypervisor: AsyncMock,
        clock: FixedClock,
    ) -> None:
        provisioned, _ = await _start_job(controller)
        await controller.orchestrator.shutdown()

        restarted = build_controller(settings, store, hypervisor=mock_hypervisor, clock=clock)
        clock.advance(timedelta(minutes=61))
        await restarted.lease_reconciler.tick()

        async with store.session() as db:
            sandbox = await sandbox_service.get_sandbox(db, provisioned.vmid)
            ws = await workspace_service.get_workspace(db, "ws_1")
        assert sandbox.state == SandboxState.DESTROYED.value
        assert ws.attached_vmid is None
        assert ws.lease_owner is None
        assert ws.lease_nonce is None

    @pytest.mark.asyncio
    async def test_vanished_vm_fails_job(
        self,
        controller: Controller,
        store: Store,
        workspace: Workspace,
        mock_hypervisor: AsyncMock,
    ) -> None:
        provisioned, _ = await _start_job(controller)
        mock_hypervisor.status.side_effect = VMNotFoundError(provisioned.vmid)

        await controller.state_reconciler.tick()

        async with store.session() as db:
            job = await job_service.get_job(db, provisioned.job_id)
            sandbox = await sandbox_service.get_sandbox(db, provisioned.vmid)
            ws = await workspace_service.get_workspace(db, "ws_1")
        assert job.status == JobStatus.FAILED.value
        assert json.loads(job.result_json) == {
            "error": f"VM {provisioned.vmid} not found",
            "kind": "adapter",
        }
        assert sandbox.state == SandboxState.DESTROYED.value
        assert ws.lease_owner is None
