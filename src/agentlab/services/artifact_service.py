"""Artifact registry and retention planner."""

import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agentlab.core.clock import utc_now
from agentlab.core.errors import NotFoundError, ValidationError
from agentlab.infra.models import Artifact, Job, Sandbox
from agentlab.infra.sqlite import translate_integrity_error

_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class RetentionRecord:
    """One artifact joined with its job and (optional) sandbox."""

    artifact: Artifact
    job_profile: str
    job_status: str
    job_updated_at: datetime | None
    sandbox_vmid: int | None
    sandbox_state: str | None


def _validate(job_id: str, name: str, path: str, size_bytes: int, sha256: str) -> None:
    if not job_id.strip():
        raise ValidationError("artifact job_id is required")
    if not name.strip() or not path.strip():
        raise ValidationError("artifact name and path are required")
    if size_bytes <= 0:
        raise ValidationError("artifact size_bytes must be positive")
    if not _SHA256_RE.match(sha256 or ""):
        raise ValidationError("artifact sha256 must be 64 hex characters")


async def create_artifact(
    db: AsyncSession,
    job_id: str,
    name: str,
    path: str,
    size_bytes: int,
    sha256: str,
    vmid: int | None = None,
    mime: str | None = None,
    now: datetime | None = None,
) -> Artifact:
    """Insert artifact metadata.

    Raises:
        ValidationError: On empty fields, size_bytes <= 0 or malformed sha256
        ForeignKeyError: If the job does not exist
    """
    _validate(job_id, name, path, size_bytes, sha256)
    if vmid is not None and vmid <= 0:
        raise ValidationError("vmid must be positive")

    artifact = Artifact(
        job_id=job_id,
        vmid=vmid,
        name=name,
        path=path,
        size_bytes=size_bytes,
        sha256=sha256.lower(),
        mime=mime or None,
        created_at=now or utc_now(),
    )
    db.add(artifact)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise translate_integrity_error(e, f"artifact {name}") from e
    return artifact


async def get_artifact(db: AsyncSession, artifact_id: int) -> Artifact:
    result = await db.execute(select(Artifact).where(Artifact.id == artifact_id))
    artifact = result.scalar_one_or_none()
    if artifact is None:
        raise NotFoundError(f"artifact {artifact_id} not found")
    return artifact


async def list_artifacts_by_job(db: AsyncSession, job_id: str) -> list[Artifact]:
    result = await db.execute(
        select(Artifact).where(Artifact.job_id == job_id).order_by(Artifact.id.asc())
    )
    return list(result.scalars().all())


async def delete_artifact(db: AsyncSession, artifact_id: int) -> None:
    """Remove the row. The caller removes the file afterwards.

    Raises:
        NotFoundError: If no row was removed
    """
    result = await db.execute(
        delete(Artifact)
        .where(Artifact.id == artifact_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        raise NotFoundError(f"artifact {artifact_id} not found")


async def list_retention_candidates(db: AsyncSession) -> list[RetentionRecord]:
    """Every artifact with its job's profile/status and sandbox state.

    The job's sandbox_vmid wins over the artifact's own vmid. Pure read;
    applying a retention policy is up to the caller.
    """
    effective_vmid = func.coalesce(Job.sandbox_vmid, Artifact.vmid)
    stmt = (
        select(
            Artifact,
            Job.profile,
            Job.status,
            Job.updated_at,
            effective_vmid.label("sandbox_vmid"),
            Sandbox.state,
        )
        .join(Job, Artifact.job_id == Job.id)
        .outerjoin(Sandbox, Sandbox.vmid == effective_vmid)
        .order_by(Artifact.id.asc())
    )
    result = await db.execute(stmt)
    return [
        RetentionRecord(
            artifact=artifact,
            job_profile=profile,
            job_status=status,
            job_updated_at=updated_at,
            sandbox_vmid=sandbox_vmid,
            sandbox_state=sandbox_state,
        )
        for artifact, profile, status, updated_at, sandbox_vmid, sandbox_state in result.all()
    ]
