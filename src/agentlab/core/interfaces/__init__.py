"""Core interfaces for the controller."""

from agentlab.core.interfaces.hypervisor import Hypervisor, VMConfig, VMStatus
from agentlab.core.interfaces.secrets import SecretStore

__all__ = [
    "Hypervisor",
    "VMConfig",
    "VMStatus",
    "SecretStore",
]
