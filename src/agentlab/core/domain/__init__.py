"""Domain models and enums."""

from agentlab.core.domain.events import EventKind, ScopeType
from agentlab.core.domain.job import (
    JOB_TERMINAL_STATUSES,
    JobStatus,
    is_terminal_job_status,
)
from agentlab.core.domain.sandbox import (
    ALLOWED_TRANSITIONS,
    OUTCOME_STATES,
    STOPPABLE_STATES,
    SandboxState,
    can_transition,
    is_terminal,
)
from agentlab.core.domain.workspace import (
    DEFAULT_LEASE_TTL,
    Lease,
    LeaseOwnerKind,
    lease_owner,
    renew_interval,
)

__all__ = [
    "EventKind",
    "ScopeType",
    "JobStatus",
    "SandboxState",
    "Lease",
    "LeaseOwnerKind",
    "ALLOWED_TRANSITIONS",
    "DEFAULT_LEASE_TTL",
    "JOB_TERMINAL_STATUSES",
    "OUTCOME_STATES",
    "STOPPABLE_STATES",
    "can_transition",
    "is_terminal",
    "is_terminal_job_status",
    "lease_owner",
    "renew_interval",
]
