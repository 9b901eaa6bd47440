"""Sandbox domain enums and the permitted transition table."""

from enum import StrEnum


class SandboxState(StrEnum):
    """Sandbox lifecycle state."""

    REQUESTED = "REQUESTED"
    PROVISIONING = "PROVISIONING"
    BOOTING = "BOOTING"
    READY = "READY"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    STOPPED = "STOPPED"
    DESTROYED = "DESTROYED"


ALLOWED_TRANSITIONS: dict[SandboxState, frozenset[SandboxState]] = {
    SandboxState.REQUESTED: frozenset({SandboxState.PROVISIONING, SandboxState.FAILED}),
    SandboxState.PROVISIONING: frozenset({SandboxState.BOOTING, SandboxState.FAILED}),
    SandboxState.BOOTING: frozenset(
        {SandboxState.READY, SandboxState.FAILED, SandboxState.TIMEOUT}
    ),
    SandboxState.READY: frozenset(
        {SandboxState.RUNNING, SandboxState.STOPPED, SandboxState.FAILED}
    ),
    SandboxState.RUNNING: frozenset(
        {
            SandboxState.COMPLETED,
            SandboxState.FAILED,
            SandboxState.TIMEOUT,
            SandboxState.STOPPED,
        }
    ),
    SandboxState.COMPLETED: frozenset({SandboxState.STOPPED, SandboxState.DESTROYED}),
    SandboxState.FAILED: frozenset({SandboxState.STOPPED, SandboxState.DESTROYED}),
    SandboxState.TIMEOUT: frozenset({SandboxState.STOPPED, SandboxState.DESTROYED}),
    SandboxState.STOPPED: frozenset({SandboxState.DESTROYED}),
    SandboxState.DESTROYED: frozenset(),
}

# Outcome states: the workload is over but the VM may still exist
OUTCOME_STATES = frozenset(
    {SandboxState.COMPLETED, SandboxState.FAILED, SandboxState.TIMEOUT}
)

# States from which STOPPED is reachable in one step
STOPPABLE_STATES = frozenset(
    state for state, nxt in ALLOWED_TRANSITIONS.items() if SandboxState.STOPPED in nxt
)


def is_terminal(state: SandboxState) -> bool:
    return state == SandboxState.DESTROYED


def can_transition(current: SandboxState, target: SandboxState) -> bool:
    """Check the transition table. Same-state moves are not transitions."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())
