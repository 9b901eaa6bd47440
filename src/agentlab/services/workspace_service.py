"""Workspace registry: CRUD, attach/detach CAS, lease CAS and snapshots.

Attach and lease are independent protocols. A caller acquires the lease,
attaches, and later detaches and releases with the same (owner, nonce).
"""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agentlab.core.clock import utc_now
from agentlab.core.errors import NotFoundError, ValidationError
from agentlab.infra.models import Workspace, WorkspaceSnapshot
from agentlab.infra.sqlite import translate_integrity_error


async def create_workspace(
    db: AsyncSession,
    workspace_id: str,
    name: str,
    storage: str,
    volume_id: str,
    size_gb: int,
    now: datetime | None = None,
) -> Workspace:
    """Create a new workspace.

    Args:
        db: Database session
        workspace_id: Workspace ID
        name: Unique workspace name
        storage: Hypervisor storage pool
        volume_id: Backend volume identifier
        size_gb: Volume size, must be positive

    Returns:
        Created workspace

    Raises:
        ValidationError: If a required field is empty or size_gb <= 0
        ConflictError: If id or name already exists
    """
    if not workspace_id.strip() or not name.strip():
        raise ValidationError("workspace id and name are required")
    if not storage.strip() or not volume_id.strip():
        raise ValidationError("workspace storage and volume_id are required")
    if size_gb <= 0:
        raise ValidationError("workspace size_gb must be positive")
    now = now or utc_now()

    workspace = Workspace(
        id=workspace_id,
        name=name,
        storage=storage,
        volume_id=volume_id,
        size_gb=size_gb,
        created_at=now,
        updated_at=now,
    )
    db.add(workspace)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise translate_integrity_error(e, f"workspace {name}") from e
    return workspace


async def get_workspace(db: AsyncSession, workspace_id: str) -> Workspace:
    """Get workspace by ID.

    Raises:
        NotFoundError: If workspace not found
    """
    result = await db.execute(select(Workspace).where(Workspace.id == workspace_id))
    workspace = result.scalar_one_or_none()
    if workspace is None:
        raise NotFoundError(f"workspace {workspace_id} not found")
    return workspace


async def get_workspace_by_name(db: AsyncSession, name: str) -> Workspace:
    result = await db.execute(select(Workspace).where(Workspace.name == name))
    workspace = result.scalar_one_or_none()
    if workspace is None:
        raise NotFoundError(f"workspace {name} not found")
    return workspace


async def get_workspace_by_attached_vmid(db: AsyncSession, vmid: int) -> Workspace | None:
    result = await db.execute(select(Workspace).where(Workspace.attached_vmid == vmid))
    return result.scalars().first()


async def list_workspaces(db: AsyncSession) -> list[Workspace]:
    result = await db.execute(select(Workspace).order_by(Workspace.created_at.desc()))
    return list(result.scalars().all())


async def delete_workspace(db: AsyncSession, workspace_id: str) -> None:
    """Delete workspace row; sessions and snapshots cascade."""
    result = await db.execute(
        delete(Workspace)
        .where(Workspace.id == workspace_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        raise NotFoundError(f"workspace {workspace_id} not found")


# =============================================================================
# Attach / detach
# =============================================================================


async def attach(
    db: AsyncSession, workspace_id: str, vmid: int, now: datetime | None = None
) -> bool:
    """Set attached_vmid only when currently unattached.

    Returns:
        False if already attached (row unchanged) or missing
    """
    if vmid <= 0:
        raise ValidationError("vmid must be positive")
    stmt = (
        update(Workspace)
        .where(Workspace.id == workspace_id, Workspace.attached_vmid.is_(None))
        .values(attached_vmid=vmid, updated_at=now or utc_now())
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount == 1


async def detach(
    db: AsyncSession, workspace_id: str, vmid: int, now: datetime | None = None
) -> bool:
    """Clear attached_vmid only when it equals vmid."""
    stmt = (
        update(Workspace)
        .where(Workspace.id == workspace_id, Workspace.attached_vmid == vmid)
        .values(attached_vmid=None, updated_at=now or utc_now())
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount == 1


# =============================================================================
# Lease (owner, nonce, expires_at)
# =============================================================================


def _validate_lease_args(owner: str, nonce: str) -> None:
    if not owner.strip():
        raise ValidationError("lease owner is required")
    if not nonce.strip():
        raise ValidationError("lease nonce is required")


async def try_acquire_lease(
    db: AsyncSession,
    workspace_id: str,
    owner: str,
    nonce: str,
    expires_at: datetime,
    now: datetime | None = None,
) -> bool:
    """Take the lease if the workspace is lease-free.

    Lease-free means no owner, no expiry, or expiry at or before now.
    Of several concurrent callers at most one gets True.
    """
    _validate_lease_args(owner, nonce)
    if expires_at is None:
        raise ValidationError("lease expires_at is required")
    now = now or utc_now()

    stmt = (
        update(Workspace)
        .where(
            Workspace.id == workspace_id,
            or_(
                Workspace.lease_owner.is_(None),
                Workspace.lease_expires_at.is_(None),
                Workspace.lease_expires_at <= now,
            ),
        )
        .values(
            lease_owner=owner,
            lease_nonce=nonce,
            lease_expires_at=expires_at,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount == 1


async def renew_lease(
    db: AsyncSession,
    workspace_id: str,
    owner: str,
    nonce: str,
    expires_at: datetime,
    now: datetime | None = None,
) -> bool:
    """Extend the lease when (owner, nonce) still match the row."""
    _validate_lease_args(owner, nonce)
    if expires_at is None:
        raise ValidationError("lease expires_at is required")
    stmt = (
        update(Workspace)
        .where(
            Workspace.id == workspace_id,
            Workspace.lease_owner == owner,
            Workspace.lease_nonce == nonce,
        )
        .values(lease_expires_at=expires_at, updated_at=now or utc_now())
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount == 1


async def release_lease(
    db: AsyncSession,
    workspace_id: str,
    owner: str,
    nonce: str,
    now: datetime | None = None,
) -> bool:
    """Clear the lease triple when (owner, nonce) match."""
    _validate_lease_args(owner, nonce)
    stmt = (
        update(Workspace)
        .where(
            Workspace.id == workspace_id,
            Workspace.lease_owner == owner,
            Workspace.lease_nonce == nonce,
        )
        .values(
            lease_owner=None,
            lease_nonce=None,
            lease_expires_at=None,
            updated_at=now or utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount == 1


async def list_expired_leases(db: AsyncSession, now: datetime) -> list[Workspace]:
    """Workspaces whose lease is held but past expiry."""
    stmt = (
        select(Workspace)
        .where(
            Workspace.lease_owner.is_not(None),
            Workspace.lease_expires_at <= now,
        )
        .order_by(Workspace.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


# =============================================================================
# Snapshots
# =============================================================================


async def create_snapshot(
    db: AsyncSession,
    workspace_id: str,
    name: str,
    backend_ref: str,
    meta: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> WorkspaceSnapshot:
    """Record a snapshot.

    Raises:
        ValidationError: If a field is empty
        ConflictError: If (workspace_id, name) exists
        ForeignKeyError: If the workspace does not exist
    """
    if not workspace_id.strip() or not name.strip() or not backend_ref.strip():
        raise ValidationError("snapshot workspace_id, name and backend_ref are required")

    snapshot = WorkspaceSnapshot(
        workspace_id=workspace_id,
        name=name,
        backend_ref=backend_ref,
        created_at=now or utc_now(),
        meta_json=json.dumps(meta) if meta is not None else None,
    )
    db.add(snapshot)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise translate_integrity_error(e, f"snapshot {workspace_id}/{name}") from e
    return snapshot


async def get_snapshot(db: AsyncSession, workspace_id: str, name: str) -> WorkspaceSnapshot:
    result = await db.execute(
        select(WorkspaceSnapshot).where(
            WorkspaceSnapshot.workspace_id == workspace_id,
            WorkspaceSnapshot.name == name,
        )
    )
    snapshot = result.scalar_one_or_none()
    if snapshot is None:
        raise NotFoundError(f"snapshot {workspace_id}/{name} not found")
    return snapshot


async def list_snapshots(db: AsyncSession, workspace_id: str) -> list[WorkspaceSnapshot]:
    result = await db.execute(
        select(WorkspaceSnapshot)
        .where(WorkspaceSnapshot.workspace_id == workspace_id)
        .order_by(WorkspaceSnapshot.created_at.desc(), WorkspaceSnapshot.name)
    )
    return list(result.scalars().all())
