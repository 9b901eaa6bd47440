"""Proxmox backend over the REST API (``/api2/json``).

Authentication uses an API token (``user@realm!id=secret``). Long
operations return a task UPID which is polled until the task stops.
"""

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import httpx

from agentlab.adapters.hypervisor.parsing import (
    is_missing_vm_error,
    parse_agent_ips,
    select_ip,
)
from agentlab.core.errors import AdapterError, VMNotFoundError
from agentlab.core.interfaces import Hypervisor, VMConfig, VMStatus

logger = logging.getLogger(__name__)

TASK_POLL_INTERVAL = 1.0


class ApiHypervisor(Hypervisor):
    """Hypervisor over the Proxmox VE HTTP API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        node: str = "",
        agent_cidr: str = "",
        verify_tls: bool = True,
        full_clone: bool = False,
        client: httpx.AsyncClient | None = None,
        poll_interval: float = TASK_POLL_INTERVAL,
    ) -> None:
        self._node = node.strip()
        self._agent_cidr = agent_cidr
        self._full_clone = full_clone
        self._poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/api2/json",
            headers={"Authorization": f"PVEAPIToken={token.strip()}"},
            verify=verify_tls,
        )

    async def close(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        vmid: int | None = None,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, data=data, params=params)
        except httpx.HTTPError as e:
            raise AdapterError(f"{method} {path}: {e}") from e

        if resp.status_code >= 400:
            detail = resp.text.strip()
            if vmid is not None and (resp.status_code == 404 or is_missing_vm_error(detail)):
                raise VMNotFoundError(vmid)
            raise AdapterError(f"{method} {path}: HTTP {resp.status_code}: {detail}")
        try:
            return resp.json().get("data")
        except ValueError as e:
            raise AdapterError(f"{method} {path}: invalid JSON response") from e

    async def _ensure_node(self) -> str:
        if self._node:
            return self._node
        nodes = await self._request("GET", "/nodes") or []
        if not nodes:
            raise AdapterError("no Proxmox nodes available")
        self._node = nodes[0]["node"]
        return self._node

    async def _wait_for_task(self, node: str, upid: Any) -> None:
        if not isinstance(upid, str) or not upid.startswith("UPID:"):
            return
        path = f"/nodes/{node}/tasks/{quote(upid, safe='')}/status"
        while True:
            status = await self._request("GET", path) or {}
            if status.get("status") == "stopped":
                exit_status = status.get("exitstatus", "")
                if exit_status != "OK":
                    raise AdapterError(f"task {upid} failed: {exit_status}")
                return
            await asyncio.sleep(self._poll_interval)

    # =========================================================================
    # Hypervisor
    # =========================================================================

    async def clone(self, template_vmid: int, vmid: int, name: str) -> None:
        node = await self._ensure_node()
        data = {"newid": vmid, "full": 1 if self._full_clone else 0}
        if name:
            data["name"] = name
        upid = await self._request(
            "POST", f"/nodes/{node}/qemu/{template_vmid}/clone", data=data
        )
        await self._wait_for_task(node, upid)

    async def configure(self, vmid: int, config: VMConfig) -> None:
        data: dict[str, Any] = {}
        if config.name:
            data["name"] = config.name
        if config.cores:
            data["cores"] = config.cores
        if config.memory_mb:
            data["memory"] = config.memory_mb
        if config.cloud_init_snippet:
            data["cicustom"] = f"user={config.cloud_init_snippet}"
        if config.tags:
            data["tags"] = ";".join(config.tags)
        if not data:
            return
        node = await self._ensure_node()
        await self._request("PUT", f"/nodes/{node}/qemu/{vmid}/config", data=data, vmid=vmid)

    async def _power(self, vmid: int, action: str) -> None:
        node = await self._ensure_node()
        upid = await self._request(
            "POST", f"/nodes/{node}/qemu/{vmid}/status/{action}", vmid=vmid
        )
        await self._wait_for_task(node, upid)

    async def start(self, vmid: int) -> None:
        await self._power(vmid, "start")

    async def stop(self, vmid: int) -> None:
        await self._power(vmid, "stop")

    async def destroy(self, vmid: int) -> None:
        node = await self._ensure_node()
        upid = await self._request(
            "DELETE", f"/nodes/{node}/qemu/{vmid}", params={"purge": 1}, vmid=vmid
        )
        await self._wait_for_task(node, upid)

    async def status(self, vmid: int) -> VMStatus:
        node = await self._ensure_node()
        current = await self._request(
            "GET", f"/nodes/{node}/qemu/{vmid}/status/current", vmid=vmid
        ) or {}
        try:
            return VMStatus(current.get("status", ""))
        except ValueError:
            return VMStatus.UNKNOWN

    async def guest_ip(self, vmid: int) -> str | None:
        node = await self._ensure_node()
        try:
            payload = await self._request(
                "GET", f"/nodes/{node}/qemu/{vmid}/agent/network-get-interfaces", vmid=vmid
            )
        except VMNotFoundError:
            raise
        except AdapterError as e:
            if "not running" in e.message.lower():
                return None
            raise
        try:
            ips = parse_agent_ips(payload or {})
        except ValueError as e:
            raise AdapterError(f"guest ip vm {vmid}: {e}") from e
        return select_ip(ips, self._agent_cidr)
