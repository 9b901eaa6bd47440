"""Session registry: named workspace bindings with a current sandbox."""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agentlab.core.clock import utc_now
from agentlab.core.errors import NotFoundError, ValidationError
from agentlab.infra.models import Session
from agentlab.infra.sqlite import translate_integrity_error


async def create_session(
    db: AsyncSession,
    session_id: str,
    name: str,
    workspace_id: str,
    profile: str,
    branch: str | None = None,
    meta: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> Session:
    """Create a session bound to an existing workspace.

    Raises:
        ValidationError: If id, name, workspace_id or profile is empty
        ConflictError: If id or name exists
        ForeignKeyError: If the workspace does not exist
    """
    if not session_id.strip() or not name.strip():
        raise ValidationError("session id and name are required")
    if not workspace_id.strip() or not profile.strip():
        raise ValidationError("session workspace_id and profile are required")
    now = now or utc_now()

    session = Session(
        id=session_id,
        name=name,
        workspace_id=workspace_id,
        profile=profile,
        branch=branch,
        created_at=now,
        updated_at=now,
        meta_json=json.dumps(meta) if meta is not None else None,
    )
    db.add(session)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise translate_integrity_error(e, f"session {name}") from e
    return session


async def get_session(db: AsyncSession, session_id: str) -> Session:
    result = await db.execute(select(Session).where(Session.id == session_id))
    session = result.scalar_one_or_none()
    if session is None:
        raise NotFoundError(f"session {session_id} not found")
    return session


async def get_session_by_name(db: AsyncSession, name: str) -> Session:
    result = await db.execute(select(Session).where(Session.name == name))
    session = result.scalar_one_or_none()
    if session is None:
        raise NotFoundError(f"session {name} not found")
    return session


async def list_sessions(db: AsyncSession, workspace_id: str | None = None) -> list[Session]:
    stmt = select(Session)
    if workspace_id is not None:
        stmt = stmt.where(Session.workspace_id == workspace_id)
    result = await db.execute(stmt.order_by(Session.created_at.desc()))
    return list(result.scalars().all())


async def _update_session(db: AsyncSession, session_id: str, **values) -> None:
    result = await db.execute(
        update(Session)
        .where(Session.id == session_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        raise NotFoundError(f"session {session_id} not found")


async def update_current_vmid(
    db: AsyncSession,
    session_id: str,
    vmid: int | None,
    now: datetime | None = None,
) -> None:
    """Point the session at a sandbox, or clear it with ``None``."""
    if vmid is not None and vmid <= 0:
        raise ValidationError("vmid must be positive")
    await _update_session(db, session_id, current_vmid=vmid, updated_at=now or utc_now())


async def update_branch(
    db: AsyncSession,
    session_id: str,
    branch: str | None,
    now: datetime | None = None,
) -> None:
    await _update_session(db, session_id, branch=branch or None, updated_at=now or utc_now())


async def delete_session(db: AsyncSession, session_id: str) -> None:
    result = await db.execute(
        delete(Session)
        .where(Session.id == session_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        raise NotFoundError(f"session {session_id} not found")
