"""Hypervisor adapter interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum


class VMStatus(StrEnum):
    """Power state reported by the hypervisor."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass
class VMConfig:
    """Per-sandbox settings applied after clone."""

    name: str
    cores: int | None = None
    memory_mb: int | None = None
    cloud_init_snippet: str | None = None  # "<storage>:snippets/<file>"
    tags: list[str] = field(default_factory=list)


class Hypervisor(ABC):
    """Interface for VM lifecycle operations.

    Implementations: ShellHypervisor (``qm`` CLI), ApiHypervisor (REST).
    Every method raises AdapterError on failure and VMNotFoundError when
    the vmid does not exist.
    """

    @abstractmethod
    async def clone(self, template_vmid: int, vmid: int, name: str) -> None:
        """Clone template into a new VM with the given vmid."""
        ...

    @abstractmethod
    async def configure(self, vmid: int, config: VMConfig) -> None:
        """Apply sizing and cloud-init settings."""
        ...

    @abstractmethod
    async def start(self, vmid: int) -> None:
        ...

    @abstractmethod
    async def stop(self, vmid: int) -> None:
        ...

    @abstractmethod
    async def destroy(self, vmid: int) -> None:
        """Remove the VM and its disks."""
        ...

    @abstractmethod
    async def status(self, vmid: int) -> VMStatus:
        ...

    @abstractmethod
    async def guest_ip(self, vmid: int) -> str | None:
        """Return the first non-loopback IPv4 reported by the guest agent."""
        ...
