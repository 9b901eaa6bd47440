"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (agentlabd)
- component: Component name (controller, reconciler, gc, bootstrap, artifact)
- event: Event type (sandbox_transition, job_failed, etc.)
- trace_id: Job flow trace ID
- duration_ms: Duration in milliseconds

High cardinality fields (OK in logs, NOT in metric labels):
- vmid: Sandbox VMID
- job_id: Job ID
- workspace_id: Workspace ID

Token plaintext is never logged; log the vmid or job_id instead.
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types.

    Use these event types in the 'event' extra field for consistent
    log filtering and analysis.
    """

    # Coordinator events
    RECONCILE_COMPLETE = "reconcile_complete"
    RECONCILE_SLOW = "reconcile_slow"
    LEASE_EXPIRED = "lease_expired"
    GC_COMPLETE = "gc_complete"
    GC_FAILED = "gc_failed"

    # Sandbox / job flow events
    STATE_CHANGED = "state_changed"
    TRANSITION_SKIPPED = "transition_skipped"
    OPERATION_STARTED = "operation_started"
    OPERATION_FAILED = "operation_failed"
    OPERATION_TIMEOUT = "operation_timeout"
    OPERATION_SUCCESS = "operation_success"
    JOB_FAILED = "job_failed"
    JOB_COMPLETED = "job_completed"

    # Workspace lease events
    LEASE_ACQUIRED = "lease_acquired"
    LEASE_RENEWED = "lease_renewed"
    LEASE_RELEASED = "lease_released"
    LEASE_LOST = "lease_lost"

    # Endpoint contract events
    BOOTSTRAP_CONSUMED = "bootstrap_consumed"
    BOOTSTRAP_REJECTED = "bootstrap_rejected"
    ARTIFACT_STORED = "artifact_stored"
    ARTIFACT_REJECTED = "artifact_rejected"

    # Lifecycle events
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"
    CONFIG_INVALID = "config_invalid"

    # Database events
    DB_CONNECTED = "db_connected"
    DB_ERROR = "db_error"
    MIGRATION_APPLIED = "migration_applied"


class ErrorClass(StrEnum):
    """Error classification for structured error logging.

    Use these in the 'error_class' extra field to enable
    filtering by error type and setting up alerts.
    """

    TRANSIENT = "transient"  # Retryable (adapter hiccup, busy database)
    PERMANENT = "permanent"  # Not retryable (invalid input, not found)
    TIMEOUT = "timeout"  # Deadline exceeded


class Component(StrEnum):
    """Component identifiers for log filtering."""

    CONTROLLER = "controller"  # JobOrchestrator / SandboxManager
    RECONCILER = "reconciler"  # LeaseReconciler
    GC = "gc"  # ArtifactGC
    BOOTSTRAP = "bootstrap"  # Bootstrap handoff
    ARTIFACT = "artifact"  # Artifact upload
    STORE = "store"  # SQLite store
