"""Event log kinds."""

from enum import StrEnum


class EventKind(StrEnum):
    """Values of ``events.kind``."""

    SANDBOX_STATE = "sandbox.state"
    SANDBOX_LEASE = "sandbox.lease"
    SANDBOX_LEASE_EXPIRED = "sandbox.lease_expired"
    SANDBOX_IP_PENDING = "sandbox.ip_pending"
    SANDBOX_DESTROY_COMPLETED = "sandbox.destroy.completed"
    SANDBOX_DESTROY_FAILED = "sandbox.destroy.failed"
    JOB_CREATED = "job.created"
    JOB_RUNNING = "job.running"
    JOB_FAILED = "job.failed"
    JOB_REPORT = "job.report"
    WORKSPACE_LEASE_ACQUIRED = "workspace.lease.acquired"
    WORKSPACE_LEASE_RENEWED = "workspace.lease.renewed"
    WORKSPACE_LEASE_RELEASED = "workspace.lease.released"
    BOOTSTRAP_CONSUMED = "bootstrap.consumed"
    ARTIFACT_UPLOAD = "artifact.upload"
    ARTIFACT_GC = "artifact.gc"
    EXPOSURE_CREATE = "exposure.create"
    EXPOSURE_DELETE = "exposure.delete"


class ScopeType(StrEnum):
    """Message log scopes."""

    JOB = "job"
    SANDBOX = "sandbox"
    WORKSPACE = "workspace"
    SESSION = "session"
