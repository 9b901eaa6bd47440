"""Helpers shared by the Proxmox backends."""

import ipaddress
import json
from typing import Any

from agentlab.core.interfaces import VMStatus

_MISSING_VM_MARKERS = (
    "does not exist",
    "no such vm",
    "no such qemu",
    "no such vmid",
)


def is_missing_vm_error(message: str) -> bool:
    msg = (message or "").lower()
    if any(marker in msg for marker in _MISSING_VM_MARKERS):
        return True
    return "not found" in msg and "vm" in msg


def parse_status(output: str) -> VMStatus:
    """Parse ``qm status`` output (``status: running``)."""
    out = (output or "").strip()
    if not out:
        raise ValueError("empty status output")
    if "status:" in out:
        out = out.split("status:", 1)[1].strip().splitlines()[0].strip()
    else:
        out = out.split()[0]
    try:
        return VMStatus(out)
    except ValueError:
        return VMStatus.UNKNOWN


def _interfaces(payload: Any) -> list[dict]:
    if isinstance(payload, dict):
        for key in ("result", "data"):
            value = payload.get(key)
            if isinstance(value, dict):
                value = value.get("result")
            if isinstance(value, list) and value:
                return value
        return []
    if isinstance(payload, list):
        return payload
    raise ValueError("unrecognized agent response")


def parse_agent_ips(payload: str | Any) -> list[str]:
    """Usable IPv4 addresses from a guest agent network-get-interfaces reply."""
    if isinstance(payload, str):
        if not payload.strip():
            raise ValueError("empty agent response")
        payload = json.loads(payload)

    ips: list[str] = []
    for iface in _interfaces(payload):
        for addr in iface.get("ip-addresses") or []:
            if addr.get("ip-address-type") != "ipv4":
                continue
            try:
                ip = ipaddress.IPv4Address(addr.get("ip-address", ""))
            except ValueError:
                continue
            if ip.is_loopback or ip.is_link_local or ip.is_unspecified:
                continue
            ips.append(str(ip))
    return ips


def select_ip(ips: list[str], agent_cidr: str = "") -> str | None:
    """Prefer an address inside agent_cidr, then any private one."""
    if not ips:
        return None
    if agent_cidr:
        network = ipaddress.ip_network(agent_cidr, strict=False)
        for ip in ips:
            if ipaddress.ip_address(ip) in network:
                return ip
    for ip in ips:
        if ipaddress.ip_address(ip).is_private:
            return ip
    return ips[0]
