"""Periodic coordinators run by the daemon."""

from agentlab.control.coordinator.artifact_gc import ArtifactGC
from agentlab.control.coordinator.base import CoordinatorBase
from agentlab.control.coordinator.lease import LeaseReconciler
from agentlab.control.coordinator.state import StateReconciler

__all__ = [
    "ArtifactGC",
    "CoordinatorBase",
    "LeaseReconciler",
    "StateReconciler",
]
