"""JobOrchestrator - drives one job from admission to teardown.

Flow (one asyncio task per job):
    submit -> QUEUED job + job.created
    run_job -> workspace lease (job:<id>, or session:<id> for session
              jobs) -> vmid allocation (REQUESTED)
            -> bootstrap token -> PROVISIONING -> clone/configure/start
            -> BOOTING -> sandbox lease
    mark_ready (bootstrap handoff) -> IP, READY, job RUNNING, sandbox RUNNING
    report -> result_json + outcome state -> destroy unless keepalive

Any failure on the way moves the job to FAILED with an ``{"error",
"kind"}`` payload and runs a bounded best-effort cleanup.

Teardown releases a job-owned workspace lease with the in-memory Lease
when this process took it, and with the nonce stored on the workspace
row otherwise. Session-owned leases outlive the job.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from agentlab.app.logging import clear_trace_context, set_trace_id
from agentlab.app.metrics.collector import JOBS_TOTAL, PROVISION_DURATION
from agentlab.app.profiles import Profile
from agentlab.control.sandbox_manager import SandboxManager
from agentlab.control.workspace_lease import WorkspaceLeaseManager
from agentlab.core.clock import Clock, IdSource, format_timestamp
from agentlab.core.domain import (
    EventKind,
    JobStatus,
    Lease,
    LeaseOwnerKind,
    SandboxState,
    is_terminal_job_status,
    lease_owner,
)
from agentlab.core.errors import (
    ConflictError,
    NotFoundError,
    OperationTimeoutError,
    ValidationError,
    error_payload,
)
from agentlab.core.interfaces import VMConfig
from agentlab.core.logging_schema import LogEvent
from agentlab.infra.models import Job
from agentlab.infra.sqlite import Store
from agentlab.services import (
    event_service,
    job_service,
    sandbox_service,
    session_service,
    workspace_service,
)
from agentlab.services.sandbox_service import DEFAULT_VMID_START
from agentlab.services.token_service import DEFAULT_BOOTSTRAP_TTL, BootstrapTokenService

logger = logging.getLogger(__name__)

_OUTCOME_FOR_STATUS = {
    JobStatus.COMPLETED: SandboxState.COMPLETED,
    JobStatus.FAILED: SandboxState.FAILED,
    JobStatus.TIMEOUT: SandboxState.TIMEOUT,
}


@dataclass
class JobRequest:
    """Job admission parameters."""

    repo_url: str
    profile: str
    ref: str = "main"
    task: str | None = None
    mode: str | None = None
    ttl_minutes: int | None = None
    keepalive: bool = False
    workspace_id: str | None = None
    session_id: str | None = None


@dataclass
class ProvisionResult:
    """What run_job hands back to the caller that injects cloud-init."""

    job_id: str
    vmid: int
    bootstrap_token: str  # plaintext, shown once


def workspace_lease_owner(job: Job) -> str:
    """Session jobs share the session's lease; others own one per job."""
    if (job.session_id or "").strip():
        return lease_owner(LeaseOwnerKind.SESSION, job.session_id)
    return lease_owner(LeaseOwnerKind.JOB, job.id)


class JobOrchestrator:
    """Runs jobs against the store, the sandbox manager and the lease manager."""

    def __init__(
        self,
        store: Store,
        sandboxes: SandboxManager,
        leases: WorkspaceLeaseManager,
        profiles: dict[str, Profile],
        clock: Clock | None = None,
        ids: IdSource | None = None,
        vmid_start: int = DEFAULT_VMID_START,
        bootstrap_token_ttl: timedelta = DEFAULT_BOOTSTRAP_TTL,
        provisioning_timeout: timedelta = timedelta(minutes=10),
        cleanup_timeout: float = 30.0,
    ) -> None:
        self._store = store
        self._sandboxes = sandboxes
        self._leases = leases
        self._profiles = profiles
        self._clock = clock or Clock()
        self._ids = ids or IdSource()
        self._vmid_start = vmid_start
        self._bootstrap_ttl = bootstrap_token_ttl
        self._provisioning_timeout = provisioning_timeout
        self._cleanup_timeout = cleanup_timeout
        # job_id -> (lease, keep-alive task)
        self._held: dict[str, tuple[Lease, asyncio.Task]] = {}

    def _profile(self, name: str) -> Profile:
        profile = self._profiles.get(name)
        if profile is None:
            raise ValidationError(f"unknown profile {name!r}")
        return profile

    # =========================================================================
    # Admission
    # =========================================================================

    async def submit(self, request: JobRequest) -> Job:
        """Create a QUEUED job.

        Raises:
            ValidationError: On empty repo_url or unknown profile
            NotFoundError: If the session or workspace does not exist
        """
        if not request.repo_url.strip():
            raise ValidationError("repo_url is required")
        self._profile(request.profile)
        if request.ttl_minutes is not None and request.ttl_minutes <= 0:
            raise ValidationError("ttl_minutes must be positive")

        now = self._clock.now()
        job_id = self._ids.new_id("job")
        workspace_id = request.workspace_id
        async with self._store.session() as db:
            if request.session_id:
                session = await session_service.get_session(db, request.session_id)
                workspace_id = workspace_id or session.workspace_id
            if workspace_id:
                await workspace_service.get_workspace(db, workspace_id)

            job = await job_service.create_job(
                db,
                job_id=job_id,
                repo_url=request.repo_url.strip(),
                ref=request.ref,
                profile=request.profile,
                task=request.task,
                mode=request.mode,
                ttl_minutes=request.ttl_minutes,
                keepalive=request.keepalive,
                workspace_id=workspace_id,
                session_id=request.session_id,
                now=now,
            )
            await event_service.record_event(
                db,
                EventKind.JOB_CREATED,
                job_id=job_id,
                payload={"profile": request.profile, "repo_url": job.repo_url, "ref": job.ref},
                now=now,
            )

        JOBS_TOTAL.labels(status=JobStatus.QUEUED.value).inc()
        return job

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def run_job(self, job_id: str) -> ProvisionResult:
        """Provision a sandbox for a QUEUED job, bounded by provisioning_timeout.

        Raises:
            ConflictError: If the job is not QUEUED or the workspace is busy
            OperationTimeoutError: If provisioning exceeded the deadline
        """
        set_trace_id(job_id)
        try:
            async with self._store.session() as db:
                job = await job_service.get_job(db, job_id)
            if job.status != JobStatus.QUEUED.value:
                raise ConflictError(f"job {job_id} is {job.status}, not QUEUED")

            started = time.monotonic()
            try:
                try:
                    async with asyncio.timeout(self._provisioning_timeout.total_seconds()):
                        result = await self._provision(job)
                except TimeoutError as e:
                    raise OperationTimeoutError(
                        f"provisioning job {job_id} exceeded {self._provisioning_timeout}"
                    ) from e
            except Exception as e:
                await self.fail_job(job_id, e)
                raise
        finally:
            clear_trace_context()

        PROVISION_DURATION.observe(time.monotonic() - started)
        return result

    async def _provision(self, job: Job) -> ProvisionResult:
        profile = self._profile(job.profile)

        if job.workspace_id:
            lease = await self._acquire_workspace(job)
            self._held[job.id] = (lease, self._leases.start_keep_alive(lease))

        now = self._clock.now()
        async with self._store.session() as db:
            sandbox = await sandbox_service.allocate_sandbox(
                db,
                name="",
                profile=job.profile,
                start=self._vmid_start,
                keepalive=job.keepalive,
                workspace_id=job.workspace_id,
                now=now,
            )
            vmid = sandbox.vmid
            # Associate now so the bootstrap handoff can find the job
            await job_service.update_job_sandbox(db, job.id, vmid, now=now)
            if job.workspace_id and not await workspace_service.attach(
                db, job.workspace_id, vmid, now=now
            ):
                raise ConflictError(f"workspace {job.workspace_id} is attached to another sandbox")
            if job.session_id:
                await session_service.update_current_vmid(db, job.session_id, vmid, now=now)
            token, _ = await BootstrapTokenService.issue(
                db, vmid, ttl=self._bootstrap_ttl, now=now
            )

        config = VMConfig(
            name=sandbox.name,
            cores=profile.cores,
            memory_mb=profile.memory_mb,
            tags=["agentlab", job.profile],
        )
        await self._sandboxes.provision(
            vmid, sandbox.name, profile.template_vmid, config, job_id=job.id
        )

        # Keepalive sandboxes get a deadline too; keepalive only makes it renewable
        ttl_minutes = job.ttl_minutes or profile.ttl_minutes
        if ttl_minutes:
            await self._sandboxes.set_lease(vmid, timedelta(minutes=ttl_minutes))

        logger.info(
            "Sandbox provisioned",
            extra={"event": LogEvent.OPERATION_SUCCESS, "job_id": job.id, "vmid": vmid},
        )
        return ProvisionResult(job_id=job.id, vmid=vmid, bootstrap_token=token)

    async def _acquire_workspace(self, job: Job) -> Lease:
        owner = workspace_lease_owner(job)
        if job.session_id:
            lease = await self._leases.adopt(job.workspace_id, owner)
            if lease is not None:
                return lease
        return await self._leases.acquire(job.workspace_id, owner, job_id=job.id)

    async def mark_ready(self, vmid: int, ip: str | None) -> Job:
        """Guest checked in: record IP, READY, job RUNNING, sandbox RUNNING.

        Without an IP the sandbox still advances and a
        ``sandbox.ip_pending`` event is left for the operator.
        """
        now = self._clock.now()
        async with self._store.session() as db:
            job = await job_service.get_job_by_sandbox_vmid(db, vmid)
            if ip:
                await sandbox_service.update_ip(db, vmid, ip, now=now)
            else:
                await event_service.record_event(
                    db, EventKind.SANDBOX_IP_PENDING, sandbox_vmid=vmid, job_id=job.id, now=now
                )

        await self._sandboxes.require_transition(
            vmid,
            SandboxState.BOOTING,
            SandboxState.READY,
            job_id=job.id,
            already=frozenset({SandboxState.READY}),
        )

        async with self._store.session() as db:
            await job_service.update_job_status(db, job.id, JobStatus.RUNNING, now=now)
            await event_service.record_event(
                db, EventKind.JOB_RUNNING, sandbox_vmid=vmid, job_id=job.id, now=now
            )
            await sandbox_service.touch_last_used(db, vmid, now=now)
        JOBS_TOTAL.labels(status=JobStatus.RUNNING.value).inc()

        await self._sandboxes.require_transition(
            vmid, SandboxState.READY, SandboxState.RUNNING, job_id=job.id
        )
        job.status = JobStatus.RUNNING.value
        return job

    # =========================================================================
    # Completion
    # =========================================================================

    async def report(
        self,
        job_id: str,
        vmid: int,
        status: JobStatus,
        message: str = "",
        result: Any = None,
    ) -> None:
        """Guest reported a terminal outcome.

        Raises:
            ValidationError: If status is not terminal
            NotFoundError: If the job does not exist
            ConflictError: If the job is already terminal or bound elsewhere
        """
        status = JobStatus(status)
        if not is_terminal_job_status(status):
            raise ValidationError(f"report status must be terminal, got {status.value}")

        now = self._clock.now()
        async with self._store.session() as db:
            job = await job_service.get_job(db, job_id)
            if is_terminal_job_status(job.status):
                raise ConflictError(f"job {job_id} is already {job.status}")
            if job.sandbox_vmid != vmid:
                raise ConflictError(f"job {job_id} is not bound to sandbox {vmid}")

            payload: dict[str, Any] = {
                "status": status.value,
                "reported_at": format_timestamp(now),
            }
            if message.strip():
                payload["message"] = message.strip()
            if result is not None:
                payload["result"] = result
            await job_service.update_job_result(db, job_id, status, payload, now=now)
            await event_service.record_event(
                db,
                EventKind.JOB_REPORT,
                sandbox_vmid=vmid,
                job_id=job_id,
                msg=message.strip() or None,
                payload={"status": status.value},
                now=now,
            )

        JOBS_TOTAL.labels(status=status.value).inc()
        logger.info(
            "Job completed",
            extra={"event": LogEvent.JOB_COMPLETED, "job_id": job_id, "status": status.value},
        )

        await self._sandboxes.transition(
            vmid, SandboxState.RUNNING, _OUTCOME_FOR_STATUS[status], job_id=job_id
        )
        if not job.keepalive:
            await self.destroy_sandbox(vmid, job_id=job_id)

    async def fail_job(self, job_id: str, exc: BaseException) -> None:
        """Record FAILED with the error payload, then clean up best-effort."""
        payload = error_payload(exc)
        now = self._clock.now()
        vmid: int | None = None
        keepalive = False
        async with self._store.session() as db:
            job = await job_service.get_job(db, job_id)
            vmid = job.sandbox_vmid
            keepalive = job.keepalive
            if not is_terminal_job_status(job.status):
                await job_service.update_job_result(
                    db, job_id, JobStatus.FAILED, payload, now=now
                )
            await event_service.record_event(
                db,
                EventKind.JOB_FAILED,
                sandbox_vmid=vmid,
                job_id=job_id,
                msg=payload["error"],
                payload=payload,
                now=now,
            )

        JOBS_TOTAL.labels(status=JobStatus.FAILED.value).inc()
        logger.error(
            "Job failed",
            extra={
                "event": LogEvent.JOB_FAILED,
                "job_id": job_id,
                "vmid": vmid,
                "error": payload["error"],
                "kind": payload["kind"],
            },
        )

        try:
            async with asyncio.timeout(self._cleanup_timeout):
                if vmid is not None and not keepalive:
                    await self._sandboxes.destroy(vmid, job_id=job_id)
                await self._release_job_lease(job_id)
        except Exception as e:
            logger.warning("Cleanup after failed job %s did not finish: %s", job_id, e)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def _release_job_lease(self, job_id: str) -> None:
        held = self._held.pop(job_id, None)
        if held is not None:
            await self._leases.stop_keep_alive(held[1])

        async with self._store.session() as db:
            try:
                job = await job_service.get_job(db, job_id)
            except NotFoundError:
                return
        if not job.workspace_id or job.session_id:
            return

        if held is not None:
            await self._leases.release(held[0])
        else:
            await self._leases.release_stored(
                job.workspace_id, lease_owner(LeaseOwnerKind.JOB, job.id)
            )

    async def destroy_sandbox(self, vmid: int, job_id: str | None = None) -> None:
        """Destroy the sandbox and release the job's workspace lease."""
        if job_id is None:
            async with self._store.session() as db:
                try:
                    job_id = (await job_service.get_job_by_sandbox_vmid(db, vmid)).id
                except NotFoundError:
                    job_id = None
        try:
            await self._sandboxes.destroy(vmid, job_id=job_id)
        finally:
            if job_id is not None:
                await self._release_job_lease(job_id)

    async def expire_sandbox(self, vmid: int) -> None:
        """Lease expiry: job TIMEOUT if still live, sandbox TIMEOUT, destroy."""
        now = self._clock.now()
        job: Job | None = None
        async with self._store.session() as db:
            try:
                job = await job_service.get_job_by_sandbox_vmid(db, vmid)
            except NotFoundError:
                job = None
            if job is not None and not is_terminal_job_status(job.status):
                await job_service.update_job_result(
                    db,
                    job.id,
                    JobStatus.TIMEOUT,
                    {"error": "sandbox lease expired", "kind": "timeout"},
                    now=now,
                )
                JOBS_TOTAL.labels(status=JobStatus.TIMEOUT.value).inc()

        job_id = job.id if job is not None else None
        try:
            await self._sandboxes.expire(vmid, job_id=job_id)
        finally:
            if job_id is not None:
                await self._release_job_lease(job_id)

    async def reclaim_sandbox(self, vmid: int, exc: BaseException) -> None:
        """The VM is gone on the hypervisor: fail a live job, destroy the row."""
        payload = error_payload(exc)
        now = self._clock.now()
        job: Job | None = None
        async with self._store.session() as db:
            try:
                job = await job_service.get_job_by_sandbox_vmid(db, vmid)
            except NotFoundError:
                job = None
            if job is not None and not is_terminal_job_status(job.status):
                await job_service.update_job_result(
                    db, job.id, JobStatus.FAILED, payload, now=now
                )
                await event_service.record_event(
                    db,
                    EventKind.JOB_FAILED,
                    sandbox_vmid=vmid,
                    job_id=job.id,
                    msg=payload["error"],
                    payload=payload,
                    now=now,
                )
                JOBS_TOTAL.labels(status=JobStatus.FAILED.value).inc()

        await self.destroy_sandbox(vmid, job_id=job.id if job is not None else None)

    async def shutdown(self) -> None:
        """Stop keep-alive tasks; leases are left to expire."""
        held = list(self._held.values())
        self._held.clear()
        for _, task in held:
            await self._leases.stop_keep_alive(task)
