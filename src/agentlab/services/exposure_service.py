"""Exposure registry: sandbox ports surfaced under a name."""

import ipaddress
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agentlab.core.clock import utc_now
from agentlab.core.errors import NotFoundError, ValidationError
from agentlab.infra.models import Exposure
from agentlab.infra.sqlite import translate_integrity_error

MIN_PORT = 1
MAX_PORT = 65535


def _validate(name: str, vmid: int, port: int, target_ip: str, state: str) -> None:
    if not name.strip():
        raise ValidationError("exposure name is required")
    if vmid <= 0:
        raise ValidationError("vmid must be positive")
    if not MIN_PORT <= port <= MAX_PORT:
        raise ValidationError(f"port must be in [{MIN_PORT}, {MAX_PORT}]")
    if not target_ip.strip():
        raise ValidationError("exposure target_ip is required")
    try:
        ipaddress.ip_address(target_ip.strip())
    except ValueError as e:
        raise ValidationError(f"invalid target_ip {target_ip!r}") from e
    if not state.strip():
        raise ValidationError("exposure state is required")


async def create_exposure(
    db: AsyncSession,
    name: str,
    vmid: int,
    port: int,
    target_ip: str,
    state: str,
    url: str | None = None,
    now: datetime | None = None,
) -> Exposure:
    """Create an exposure.

    Raises:
        ValidationError: On empty name/state, non-positive vmid, port outside
            [1, 65535] or malformed target_ip
        ConflictError: If name exists
        ForeignKeyError: If the sandbox does not exist
    """
    _validate(name, vmid, port, target_ip, state)
    now = now or utc_now()

    exposure = Exposure(
        name=name.strip(),
        vmid=vmid,
        port=port,
        target_ip=target_ip.strip(),
        url=url or None,
        state=state.strip(),
        created_at=now,
        updated_at=now,
    )
    db.add(exposure)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise translate_integrity_error(e, f"exposure {name}") from e
    return exposure


async def get_exposure(db: AsyncSession, name: str) -> Exposure:
    result = await db.execute(select(Exposure).where(Exposure.name == name))
    exposure = result.scalar_one_or_none()
    if exposure is None:
        raise NotFoundError(f"exposure {name} not found")
    return exposure


async def list_exposures_by_vmid(db: AsyncSession, vmid: int) -> list[Exposure]:
    result = await db.execute(
        select(Exposure).where(Exposure.vmid == vmid).order_by(Exposure.name.asc())
    )
    return list(result.scalars().all())


async def list_exposures(db: AsyncSession) -> list[Exposure]:
    result = await db.execute(
        select(Exposure).order_by(Exposure.created_at.desc(), Exposure.name.asc())
    )
    return list(result.scalars().all())


async def delete_exposure(db: AsyncSession, name: str) -> None:
    """Delete by name.

    Raises:
        NotFoundError: If no row was removed
    """
    result = await db.execute(
        delete(Exposure)
        .where(Exposure.name == name)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        raise NotFoundError(f"exposure {name} not found")
