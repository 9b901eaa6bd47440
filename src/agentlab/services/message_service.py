"""Append-only message log scoped by (scope_type, scope_id)."""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentlab.core.clock import utc_now
from agentlab.core.errors import ValidationError
from agentlab.infra.models import Message
from agentlab.services.event_service import DEFAULT_LIMIT

DEFAULT_KIND = "note"


def _scope(scope_type: str, scope_id: str) -> tuple[str, str]:
    scope_type = (scope_type or "").strip()
    scope_id = (scope_id or "").strip()
    if not scope_type or not scope_id:
        raise ValidationError("message scope_type and scope_id are required")
    return scope_type, scope_id


async def append_message(
    db: AsyncSession,
    scope_type: str,
    scope_id: str,
    text: str,
    kind: str = DEFAULT_KIND,
    author: str | None = None,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> Message:
    """Append a message and return it with its id assigned."""
    scope_type, scope_id = _scope(scope_type, scope_id)
    message = Message(
        ts=now or utc_now(),
        scope_type=scope_type,
        scope_id=scope_id,
        author=author or None,
        kind=(kind or DEFAULT_KIND).strip() or DEFAULT_KIND,
        text=text or "",
        payload=json.dumps(payload, sort_keys=True) if payload is not None else None,
    )
    db.add(message)
    await db.commit()
    return message


async def list_messages(
    db: AsyncSession,
    scope_type: str,
    scope_id: str,
    after_id: int = 0,
    limit: int = DEFAULT_LIMIT,
) -> list[Message]:
    """Messages in scope with id > after_id, ascending."""
    scope_type, scope_id = _scope(scope_type, scope_id)
    if limit <= 0:
        raise ValidationError("limit must be positive")
    stmt = (
        select(Message)
        .where(
            Message.scope_type == scope_type,
            Message.scope_id == scope_id,
            Message.id > after_id,
        )
        .order_by(Message.id.asc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_messages_tail(
    db: AsyncSession,
    scope_type: str,
    scope_id: str,
    limit: int = DEFAULT_LIMIT,
) -> list[Message]:
    """Newest ``limit`` messages in scope, in chronological order."""
    scope_type, scope_id = _scope(scope_type, scope_id)
    if limit <= 0:
        raise ValidationError("limit must be positive")
    stmt = (
        select(Message)
        .where(Message.scope_type == scope_type, Message.scope_id == scope_id)
        .order_by(Message.id.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    rows = list(result.scalars().all())
    rows.reverse()
    return rows
