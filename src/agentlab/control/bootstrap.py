"""Bootstrap handoff: a booting guest trades its one-shot token for its payload.

Order matters. The job and token are checked first, the secret bundle is
decrypted and the artifact token issued, and only then is the bootstrap
token consumed, so a failure before the end leaves the token usable.
The consume is the single admission point: of concurrent handoffs with
the same token exactly one succeeds.
"""

import ipaddress
import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from agentlab.app.metrics.collector import BOOTSTRAP_CONSUME_TOTAL
from agentlab.control.job_orchestrator import JobOrchestrator
from agentlab.core.clock import Clock
from agentlab.core.domain import EventKind
from agentlab.core.errors import (
    AgentLabError,
    AlreadyConsumedError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from agentlab.core.interfaces import SecretStore
from agentlab.core.logging_schema import LogEvent
from agentlab.infra.models import BootstrapToken, Job
from agentlab.infra.sqlite import Store
from agentlab.services import event_service, job_service
from agentlab.services.token_service import (
    DEFAULT_ARTIFACT_TTL,
    ArtifactTokenService,
    BootstrapTokenService,
    hash_token,
)

logger = logging.getLogger(__name__)

ARTIFACT_TOKEN_ATTEMPTS = 5
DEFAULT_JOB_MODE = "dangerous"


class BootstrapJob(BaseModel):
    id: str
    repo_url: str
    ref: str
    task: str | None = None
    mode: str
    profile: str
    keepalive: bool = False
    ttl_minutes: int | None = None


class BootstrapArtifact(BaseModel):
    endpoint: str
    token: str


class BootstrapResponse(BaseModel):
    """Payload returned to the guest."""

    job: BootstrapJob
    artifact: BootstrapArtifact | None = None
    secrets: dict[str, Any] = {}


def job_descriptor(job: Job) -> BootstrapJob:
    return BootstrapJob(
        id=job.id,
        repo_url=job.repo_url,
        ref=job.ref,
        task=job.task,
        mode=(job.mode or "").strip() or DEFAULT_JOB_MODE,
        profile=job.profile,
        keepalive=job.keepalive,
        ttl_minutes=job.ttl_minutes if job.ttl_minutes and job.ttl_minutes > 0 else None,
    )


class BootstrapService:
    """Validates, consumes and answers bootstrap requests."""

    def __init__(
        self,
        store: Store,
        secrets: SecretStore,
        orchestrator: JobOrchestrator,
        secrets_bundle: str = "default",
        artifact_endpoint: str = "",
        artifact_token_ttl: timedelta = DEFAULT_ARTIFACT_TTL,
        agent_subnet: str = "",
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._secrets = secrets
        self._orchestrator = orchestrator
        self._bundle = secrets_bundle.strip() or "default"
        self._artifact_endpoint = artifact_endpoint.strip()
        self._artifact_ttl = artifact_token_ttl
        self._subnet = ipaddress.ip_network(agent_subnet, strict=False) if agent_subnet else None
        self._clock = clock or Clock()

    def remote_allowed(self, remote_ip: str | None) -> bool:
        if self._subnet is None:
            return True
        if not remote_ip:
            return False
        try:
            ip = ipaddress.ip_address(remote_ip.strip().strip("[]"))
        except ValueError:
            return False
        if ip.is_unspecified:
            return False
        return ip in self._subnet

    async def handoff(
        self, vmid: int, token: str, remote_ip: str | None = None
    ) -> BootstrapResponse:
        """Exchange a bootstrap token for the guest payload.

        Raises:
            ValidationError: Empty token, vmid <= 0 or caller outside agent_subnet
            NotFoundError: No job for vmid, or unknown token
            AlreadyConsumedError: Token was already used
            ExpiredError: Token is past its expiry
            DecryptError: Secret bundle could not be loaded
        """
        if not self.remote_allowed(remote_ip):
            raise ValidationError("bootstrap access restricted to agent subnet")
        if not (token or "").strip():
            raise ValidationError("token is required")
        if vmid <= 0:
            raise ValidationError("vmid must be positive")

        now = self._clock.now()
        token_hash = hash_token(token)
        async with self._store.session() as db:
            job = await job_service.get_job_by_sandbox_vmid(db, vmid)
            if not await BootstrapTokenService.validate(db, token_hash, vmid, now):
                raise await self._rejection(db, token_hash, vmid, now)

        secrets = await self._secrets.load(self._bundle)

        artifact = None
        if self._artifact_endpoint:
            artifact = BootstrapArtifact(
                endpoint=self._artifact_endpoint,
                token=await self._issue_artifact_token(job.id, vmid),
            )

        async with self._store.session() as db:
            if not await BootstrapTokenService.consume(db, token_hash, vmid, now):
                BOOTSTRAP_CONSUME_TOTAL.labels(result="rejected").inc()
                logger.warning(
                    "Bootstrap token already consumed",
                    extra={"event": LogEvent.BOOTSTRAP_REJECTED, "vmid": vmid, "job_id": job.id},
                )
                raise AlreadyConsumedError("bootstrap token already consumed")
            await event_service.record_event(
                db, EventKind.BOOTSTRAP_CONSUMED, sandbox_vmid=vmid, job_id=job.id, now=now
            )

        BOOTSTRAP_CONSUME_TOTAL.labels(result="success").inc()
        logger.info(
            "Bootstrap token consumed",
            extra={"event": LogEvent.BOOTSTRAP_CONSUMED, "vmid": vmid, "job_id": job.id},
        )

        await self._orchestrator.mark_ready(vmid, remote_ip)
        return BootstrapResponse(job=job_descriptor(job), artifact=artifact, secrets=secrets)

    async def _rejection(
        self, db: AsyncSession, token_hash: str, vmid: int, now: datetime
    ) -> AgentLabError:
        """Explain why validate() said no."""
        BOOTSTRAP_CONSUME_TOTAL.labels(result="rejected").inc()
        try:
            row: BootstrapToken = await BootstrapTokenService.get(db, token_hash)
        except NotFoundError:
            reason: AgentLabError = NotFoundError("bootstrap token not found")
        else:
            if row.vmid != vmid:
                reason = NotFoundError("bootstrap token not found")
            elif row.consumed_at is not None:
                reason = AlreadyConsumedError("bootstrap token already consumed")
            elif row.expires_at <= now:
                reason = ExpiredError("bootstrap token expired")
            else:
                reason = NotFoundError("bootstrap token not found")
        logger.warning(
            "Bootstrap token rejected",
            extra={"event": LogEvent.BOOTSTRAP_REJECTED, "vmid": vmid, "reason": str(reason)},
        )
        return reason

    async def _issue_artifact_token(self, job_id: str, vmid: int) -> str:
        last_error: ConflictError | None = None
        for _ in range(ARTIFACT_TOKEN_ATTEMPTS):
            try:
                async with self._store.session() as db:
                    plaintext, _ = await ArtifactTokenService.issue(
                        db, job_id, vmid, ttl=self._artifact_ttl, now=self._clock.now()
                    )
                return plaintext
            except ConflictError as e:
                last_error = e
        raise ConflictError("failed to issue a unique artifact token") from last_error
