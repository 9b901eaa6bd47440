"""Workspace lease domain helpers.

A lease is the ``(owner, nonce, expires_at)`` triple on a workspace row.
Owners are namespaced by the kind of holder so a stale holder can be
identified from the row alone.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

DEFAULT_LEASE_TTL = timedelta(minutes=30)
MIN_RENEW_INTERVAL = timedelta(seconds=30)
MAX_RENEW_INTERVAL = timedelta(minutes=10)


class LeaseOwnerKind(StrEnum):
    """Lease owner namespace."""

    JOB = "job"
    SESSION = "session"
    SANDBOX = "sandbox"


def lease_owner(kind: LeaseOwnerKind, ident: str | int) -> str:
    """Build an owner string such as ``job:job_01j...`` or ``sandbox:1001``."""
    ident = str(ident).strip()
    if not ident:
        raise ValueError("lease owner id is required")
    return f"{kind.value}:{ident}"


def renew_interval(ttl: timedelta) -> timedelta:
    """Half the TTL, clamped to [30s, 10min]."""
    if ttl <= timedelta(0):
        ttl = DEFAULT_LEASE_TTL
    interval = ttl / 2
    if interval < MIN_RENEW_INTERVAL:
        return MIN_RENEW_INTERVAL
    if interval > MAX_RENEW_INTERVAL:
        return MAX_RENEW_INTERVAL
    return interval


@dataclass(frozen=True)
class Lease:
    """Lease held by this process."""

    workspace_id: str
    owner: str
    nonce: str
    expires_at: datetime
