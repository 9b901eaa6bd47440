"""Prometheus metrics definitions for the controller."""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets
# =============================================================================

# MEDIUM: store queries, reconcile cycles (5ms ~ 60s)
_BUCKETS_MEDIUM = (
    0.005, 0.01, 0.02, 0.04, 0.09,
    0.18, 0.36, 0.73, 1.5, 3,
    6.2, 12.7, 26, 53,
)

# SLOW: hypervisor operations, provisioning (100ms ~ 15min)
_BUCKETS_SLOW = (
    0.1, 0.3, 1, 3, 6,
    12, 23, 46, 91, 180,
    360, 900,
)

# =============================================================================
# Sandbox / Job Metrics
# =============================================================================

SANDBOX_TRANSITIONS_TOTAL = Counter(
    "agentlab_sandbox_transitions_total",
    "Sandbox state transitions applied",
    ["from_state", "to_state"],
)

SANDBOX_TRANSITION_CONFLICTS_TOTAL = Counter(
    "agentlab_sandbox_transition_conflicts_total",
    "Sandbox CAS transitions that did not match the expected state",
    ["to_state"],
)

JOBS_TOTAL = Counter(
    "agentlab_jobs_total",
    "Jobs reaching a status",
    ["status"],
)

HYPERVISOR_OPERATION_DURATION = Histogram(
    "agentlab_hypervisor_operation_duration_seconds",
    "Duration of hypervisor adapter calls",
    ["operation", "status"],  # clone, configure, start, stop, destroy; success, error
    buckets=_BUCKETS_SLOW,
)

PROVISION_DURATION = Histogram(
    "agentlab_provision_duration_seconds",
    "Time from job admission to sandbox RUNNING",
    buckets=_BUCKETS_SLOW,
)

# =============================================================================
# Token / Lease Metrics
# =============================================================================

BOOTSTRAP_CONSUME_TOTAL = Counter(
    "agentlab_bootstrap_consume_total",
    "Bootstrap token consumption attempts",
    ["result"],  # success, rejected
)

WORKSPACE_LEASE_TOTAL = Counter(
    "agentlab_workspace_lease_total",
    "Workspace lease operations",
    ["operation", "result"],  # acquire, renew, release; success, conflict, error
)

ARTIFACT_UPLOAD_BYTES = Counter(
    "agentlab_artifact_upload_bytes_total",
    "Bytes accepted by artifact uploads",
)

# =============================================================================
# Coordinator Metrics
# =============================================================================

COORDINATOR_RECONCILE_TOTAL = Counter(
    "agentlab_coordinator_reconcile_total",
    "Total number of coordinator reconcile cycles executed",
    ["coordinator"],
)

COORDINATOR_RECONCILE_DURATION = Histogram(
    "agentlab_coordinator_reconcile_duration_seconds",
    "Duration of coordinator reconcile cycle execution",
    ["coordinator"],
    buckets=_BUCKETS_MEDIUM,
)

EXPIRED_SANDBOXES = Gauge(
    "agentlab_expired_sandboxes",
    "Sandboxes found expired in the last reconcile cycle",
)

ARTIFACT_GC_REMOVED_TOTAL = Counter(
    "agentlab_artifact_gc_removed_total",
    "Artifacts removed by retention GC",
)
