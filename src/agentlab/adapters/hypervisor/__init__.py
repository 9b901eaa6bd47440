"""Hypervisor backends. The variant is chosen once at startup."""

from agentlab.adapters.hypervisor.api import ApiHypervisor
from agentlab.adapters.hypervisor.shell import ShellHypervisor
from agentlab.app.config import Settings
from agentlab.core.interfaces import Hypervisor


def create_hypervisor(settings: Settings) -> Hypervisor:
    """Build the backend named by ``proxmox_backend``."""
    if settings.proxmox_backend == "api":
        return ApiHypervisor(
            base_url=settings.proxmox_api_url,
            token=settings.proxmox_api_token,
            node=settings.proxmox_node,
            agent_cidr=settings.agent_subnet,
            verify_tls=not settings.proxmox_tls_insecure,
        )
    return ShellHypervisor(node=settings.proxmox_node, agent_cidr=settings.agent_subnet)


__all__ = [
    "ApiHypervisor",
    "ShellHypervisor",
    "create_hypervisor",
]
