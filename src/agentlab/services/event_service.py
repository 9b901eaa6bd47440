"""Append-only event log."""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentlab.core.clock import utc_now
from agentlab.core.errors import ValidationError
from agentlab.infra.models import Event

DEFAULT_LIMIT = 100


def _limit(limit: int) -> int:
    if limit <= 0:
        raise ValidationError("limit must be positive")
    return limit


async def record_event(
    db: AsyncSession,
    kind: str,
    sandbox_vmid: int | None = None,
    job_id: str | None = None,
    msg: str | None = None,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> Event:
    """Append an event and return it with its id assigned.

    Raises:
        ValidationError: If kind is empty
    """
    if not kind or not str(kind).strip():
        raise ValidationError("event kind is required")

    event = Event(
        ts=now or utc_now(),
        kind=str(kind),
        sandbox_vmid=sandbox_vmid,
        job_id=job_id or None,
        msg=msg or None,
        payload=json.dumps(payload, sort_keys=True) if payload is not None else None,
    )
    db.add(event)
    await db.commit()
    return event


async def list_events_by_sandbox(
    db: AsyncSession, vmid: int, after_id: int = 0, limit: int = DEFAULT_LIMIT
) -> list[Event]:
    """Events for a sandbox with id > after_id, ascending."""
    stmt = (
        select(Event)
        .where(Event.sandbox_vmid == vmid, Event.id > after_id)
        .order_by(Event.id.asc())
        .limit(_limit(limit))
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_events_by_job(
    db: AsyncSession, job_id: str, after_id: int = 0, limit: int = DEFAULT_LIMIT
) -> list[Event]:
    """Events for a job with id > after_id, ascending."""
    stmt = (
        select(Event)
        .where(Event.job_id == job_id, Event.id > after_id)
        .order_by(Event.id.asc())
        .limit(_limit(limit))
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_events_tail(
    db: AsyncSession,
    vmid: int | None = None,
    job_id: str | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[Event]:
    """Newest ``limit`` events for the scope, in chronological order.

    With neither vmid nor job_id the whole log is the scope.
    """
    stmt = select(Event)
    if vmid is not None:
        stmt = stmt.where(Event.sandbox_vmid == vmid)
    if job_id is not None:
        stmt = stmt.where(Event.job_id == job_id)
    stmt = stmt.order_by(Event.id.desc()).limit(_limit(limit))
    result = await db.execute(stmt)
    rows = list(result.scalars().all())
    rows.reverse()
    return rows


def decode_payload(event: Event) -> dict[str, Any] | None:
    if not event.payload:
        return None
    return json.loads(event.payload)
