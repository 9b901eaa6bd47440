"""Job registry: CRUD, status updates, sandbox link and result payload."""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agentlab.core.clock import utc_now
from agentlab.core.domain import JobStatus
from agentlab.core.errors import NotFoundError, ValidationError
from agentlab.infra.models import Job
from agentlab.infra.sqlite import translate_integrity_error


def _status_value(status: JobStatus | str) -> str:
    value = str(status).strip() if status is not None else ""
    if not value:
        raise ValidationError("job status is required")
    try:
        return JobStatus(value).value
    except ValueError as e:
        raise ValidationError(f"unknown job status {value!r}") from e


async def create_job(
    db: AsyncSession,
    job_id: str,
    repo_url: str,
    ref: str,
    profile: str,
    task: str | None = None,
    mode: str | None = None,
    ttl_minutes: int | None = None,
    keepalive: bool = False,
    workspace_id: str | None = None,
    session_id: str | None = None,
    status: JobStatus = JobStatus.QUEUED,
    now: datetime | None = None,
) -> Job:
    """Create a job row.

    Raises:
        ValidationError: If id, repo_url, ref or profile is empty
        ConflictError: If the id exists
    """
    if not job_id.strip():
        raise ValidationError("job id is required")
    if not repo_url.strip() or not ref.strip() or not profile.strip():
        raise ValidationError("job repo_url, ref and profile are required")
    if ttl_minutes is not None and ttl_minutes < 0:
        raise ValidationError("job ttl_minutes must not be negative")
    now = now or utc_now()

    job = Job(
        id=job_id,
        repo_url=repo_url,
        ref=ref,
        profile=profile,
        task=task,
        mode=mode,
        ttl_minutes=ttl_minutes,
        keepalive=keepalive,
        workspace_id=workspace_id,
        session_id=session_id,
        status=_status_value(status),
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise translate_integrity_error(e, f"job {job_id}") from e
    return job


async def get_job(db: AsyncSession, job_id: str) -> Job:
    """Get job by ID.

    Raises:
        NotFoundError: If job not found
    """
    result = await db.execute(select(Job).where(Job.id == job_id))
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFoundError(f"job {job_id} not found")
    return job


async def get_job_by_sandbox_vmid(db: AsyncSession, vmid: int) -> Job:
    """Most recent job associated with a sandbox.

    Raises:
        NotFoundError: If no job references the vmid
    """
    stmt = (
        select(Job)
        .where(Job.sandbox_vmid == vmid)
        .order_by(Job.created_at.desc(), Job.id.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFoundError(f"no job for sandbox {vmid}")
    return job


async def list_jobs(
    db: AsyncSession,
    status: JobStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Job]:
    stmt = select(Job)
    if status is not None:
        stmt = stmt.where(Job.status == _status_value(status))
    stmt = stmt.order_by(Job.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _update_job(db: AsyncSession, job_id: str, **values) -> None:
    stmt = (
        update(Job)
        .where(Job.id == job_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise translate_integrity_error(e, f"job {job_id}") from e
    if result.rowcount == 0:
        raise NotFoundError(f"job {job_id} not found")


async def update_job_status(
    db: AsyncSession,
    job_id: str,
    status: JobStatus,
    now: datetime | None = None,
) -> None:
    """Set status unconditionally."""
    await _update_job(db, job_id, status=_status_value(status), updated_at=now or utc_now())


async def update_job_result(
    db: AsyncSession,
    job_id: str,
    status: JobStatus,
    result: dict[str, Any] | str | None,
    now: datetime | None = None,
) -> None:
    """Set status and result_json together."""
    if isinstance(result, dict):
        result = json.dumps(result, sort_keys=True)
    await _update_job(
        db,
        job_id,
        status=_status_value(status),
        result_json=result,
        updated_at=now or utc_now(),
    )


async def update_job_sandbox(
    db: AsyncSession,
    job_id: str,
    vmid: int,
    now: datetime | None = None,
) -> None:
    """Associate the job with a sandbox.

    Raises:
        ValidationError: If vmid is not positive
        ForeignKeyError: If the sandbox row does not exist
        NotFoundError: If the job does not exist
    """
    if vmid <= 0:
        raise ValidationError("vmid must be positive")
    await _update_job(db, job_id, sandbox_vmid=vmid, updated_at=now or utc_now())


async def delete_job(db: AsyncSession, job_id: str) -> None:
    """Delete job; artifacts and artifact tokens cascade."""
    result = await db.execute(
        delete(Job).where(Job.id == job_id).execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        raise NotFoundError(f"job {job_id} not found")


def decode_result(job: Job) -> dict[str, Any] | None:
    """Parse result_json, or None when unset."""
    if not job.result_json:
        return None
    return json.loads(job.result_json)
