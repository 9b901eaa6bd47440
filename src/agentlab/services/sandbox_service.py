"""Sandbox registry: CRUD, CAS state transitions and lease field."""

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agentlab.core.clock import utc_now
from agentlab.core.domain import SandboxState, can_transition
from agentlab.core.errors import ConflictError, NotFoundError, ValidationError
from agentlab.infra.models import Sandbox
from agentlab.infra.sqlite import translate_integrity_error

DEFAULT_VMID_START = 1000
VMID_ALLOC_ATTEMPTS = 5


async def create_sandbox(
    db: AsyncSession,
    vmid: int,
    name: str,
    profile: str,
    state: SandboxState = SandboxState.REQUESTED,
    keepalive: bool = False,
    workspace_id: str | None = None,
    lease_expires_at: datetime | None = None,
    now: datetime | None = None,
) -> Sandbox:
    """Insert a sandbox row.

    Raises:
        ValidationError: If vmid is not positive or name/profile empty
        ConflictError: If vmid is already taken
    """
    if vmid <= 0:
        raise ValidationError("vmid must be positive")
    if not name.strip() or not profile.strip():
        raise ValidationError("sandbox name and profile are required")
    now = now or utc_now()

    sandbox = Sandbox(
        vmid=vmid,
        name=name,
        profile=profile,
        state=SandboxState(state).value,
        keepalive=keepalive,
        workspace_id=workspace_id,
        lease_expires_at=lease_expires_at,
        created_at=now,
        updated_at=now,
    )
    db.add(sandbox)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise translate_integrity_error(e, f"sandbox {vmid}") from e
    return sandbox


async def get_sandbox(db: AsyncSession, vmid: int) -> Sandbox:
    """Get sandbox by vmid.

    Raises:
        NotFoundError: If sandbox not found
    """
    result = await db.execute(select(Sandbox).where(Sandbox.vmid == vmid))
    sandbox = result.scalar_one_or_none()
    if sandbox is None:
        raise NotFoundError(f"sandbox {vmid} not found")
    return sandbox


async def list_sandboxes(
    db: AsyncSession,
    state: SandboxState | None = None,
    include_destroyed: bool = True,
) -> list[Sandbox]:
    stmt = select(Sandbox)
    if state is not None:
        stmt = stmt.where(Sandbox.state == SandboxState(state).value)
    if not include_destroyed:
        stmt = stmt.where(Sandbox.state != SandboxState.DESTROYED.value)
    result = await db.execute(stmt.order_by(Sandbox.vmid))
    return list(result.scalars().all())


async def transition_state(
    db: AsyncSession,
    vmid: int,
    from_state: SandboxState,
    to_state: SandboxState,
    now: datetime | None = None,
) -> bool:
    """Compare-and-swap the sandbox state.

    Returns:
        True if the row was in from_state and is now in to_state,
        False if the CAS did not match (row missing or state moved on)

    Raises:
        ValidationError: If the transition is not in the allowed table
    """
    from_state = SandboxState(from_state)
    to_state = SandboxState(to_state)
    if not can_transition(from_state, to_state):
        raise ValidationError(f"invalid sandbox transition {from_state} -> {to_state}")
    now = now or utc_now()

    stmt = (
        update(Sandbox)
        .where(Sandbox.vmid == vmid, Sandbox.state == from_state.value)
        .values(state=to_state.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount == 1


async def _update_fields(db: AsyncSession, vmid: int, **values) -> None:
    stmt = (
        update(Sandbox)
        .where(Sandbox.vmid == vmid)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    if result.rowcount == 0:
        raise NotFoundError(f"sandbox {vmid} not found")


async def update_ip(db: AsyncSession, vmid: int, ip: str, now: datetime | None = None) -> None:
    if not ip.strip():
        raise ValidationError("ip is required")
    await _update_fields(db, vmid, ip=ip.strip(), updated_at=now or utc_now())


async def update_workspace(
    db: AsyncSession,
    vmid: int,
    workspace_id: str | None,
    now: datetime | None = None,
) -> None:
    """Set or clear (``None``) the workspace attached to a sandbox."""
    if workspace_id is not None and not workspace_id.strip():
        workspace_id = None
    await _update_fields(db, vmid, workspace_id=workspace_id, updated_at=now or utc_now())


async def update_lease_expires_at(
    db: AsyncSession,
    vmid: int,
    lease_expires_at: datetime | None,
    now: datetime | None = None,
) -> None:
    """Set or clear the sandbox lease. ``None`` means no TTL."""
    await _update_fields(
        db, vmid, lease_expires_at=lease_expires_at, updated_at=now or utc_now()
    )


async def update_keepalive(
    db: AsyncSession, vmid: int, keepalive: bool, now: datetime | None = None
) -> None:
    await _update_fields(db, vmid, keepalive=keepalive, updated_at=now or utc_now())


async def touch_last_used(db: AsyncSession, vmid: int, now: datetime | None = None) -> None:
    now = now or utc_now()
    await _update_fields(db, vmid, last_used_at=now, updated_at=now)


async def list_expired(db: AsyncSession, now: datetime) -> list[Sandbox]:
    """Non-destroyed sandboxes whose lease has passed, ascending vmid."""
    stmt = (
        select(Sandbox)
        .where(
            Sandbox.state != SandboxState.DESTROYED.value,
            Sandbox.lease_expires_at.is_not(None),
            Sandbox.lease_expires_at <= now,
        )
        .order_by(Sandbox.vmid)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def delete_sandbox(db: AsyncSession, vmid: int) -> None:
    """Delete the row; exposures cascade.

    Raises:
        NotFoundError: If no row was removed
    """
    result = await db.execute(
        delete(Sandbox)
        .where(Sandbox.vmid == vmid)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        raise NotFoundError(f"sandbox {vmid} not found")


async def next_vmid(db: AsyncSession, start: int = DEFAULT_VMID_START) -> int:
    """Candidate vmid: ``max(vmid) + 1``, never below start."""
    result = await db.execute(select(func.max(Sandbox.vmid)))
    current = result.scalar_one_or_none()
    if current is None or current < start:
        return start
    return current + 1


async def allocate_sandbox(
    db: AsyncSession,
    name: str,
    profile: str,
    start: int = DEFAULT_VMID_START,
    keepalive: bool = False,
    workspace_id: str | None = None,
    lease_expires_at: datetime | None = None,
    now: datetime | None = None,
) -> Sandbox:
    """Pick a vmid and insert a REQUESTED sandbox, retrying on collisions.

    The primary-key insert is the admission point: two concurrent
    allocations of the same candidate cannot both succeed.

    Raises:
        ConflictError: If every attempt collided
    """
    last_error: ConflictError | None = None
    for _ in range(VMID_ALLOC_ATTEMPTS):
        vmid = await next_vmid(db, start)
        sandbox_name = name or f"sandbox-{vmid}"
        try:
            return await create_sandbox(
                db,
                vmid=vmid,
                name=sandbox_name,
                profile=profile,
                keepalive=keepalive,
                workspace_id=workspace_id,
                lease_expires_at=lease_expires_at,
                now=now,
            )
        except ConflictError as e:
            last_error = e
    raise ConflictError(f"failed to allocate vmid after {VMID_ALLOC_ATTEMPTS} attempts") from last_error
