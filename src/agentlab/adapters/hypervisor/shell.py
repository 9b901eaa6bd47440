"""Proxmox backend driving the ``qm`` and ``pvesh`` CLIs."""

import asyncio
import logging

from agentlab.adapters.hypervisor.parsing import (
    is_missing_vm_error,
    parse_agent_ips,
    parse_status,
    select_ip,
)
from agentlab.core.errors import AdapterError, VMNotFoundError
from agentlab.core.interfaces import Hypervisor, VMConfig, VMStatus

logger = logging.getLogger(__name__)


class CommandError(AdapterError):
    """A CLI invocation exited non-zero."""

    def __init__(self, command: list[str], returncode: int, stderr: str) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"command {' '.join(command)} failed with exit {returncode}{detail}")


class ShellHypervisor(Hypervisor):
    """Hypervisor over local ``qm`` commands.

    Timeouts are applied by the caller; a cancelled call kills the child.
    """

    def __init__(
        self,
        node: str = "",
        agent_cidr: str = "",
        qm_path: str = "qm",
        pvesh_path: str = "pvesh",
        full_clone: bool = False,
    ) -> None:
        self._node = node
        self._agent_cidr = agent_cidr
        self._qm_path = qm_path
        self._pvesh_path = pvesh_path
        self._full_clone = full_clone

    async def _run(self, *args: str) -> str:
        command = [str(a) for a in args]
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            raise CommandError(command, proc.returncode, stderr.decode(errors="replace").strip())
        return stdout.decode(errors="replace")

    async def _qm(self, vmid: int, *args: str) -> str:
        """Run qm, mapping "no such VM" failures to VMNotFoundError."""
        try:
            return await self._run(self._qm_path, *args)
        except CommandError as e:
            if is_missing_vm_error(e.stderr or e.message):
                raise VMNotFoundError(vmid) from e
            raise

    async def clone(self, template_vmid: int, vmid: int, name: str) -> None:
        args = ["clone", str(template_vmid), str(vmid), "--full", "1" if self._full_clone else "0"]
        if name:
            args += ["--name", name]
        await self._run(self._qm_path, *args)
        logger.info("Cloned VM %d from template %d", vmid, template_vmid)

    async def configure(self, vmid: int, config: VMConfig) -> None:
        args = ["set", str(vmid)]
        if config.name:
            args += ["--name", config.name]
        if config.cores:
            args += ["--cores", str(config.cores)]
        if config.memory_mb:
            args += ["--memory", str(config.memory_mb)]
        if config.cloud_init_snippet:
            args += ["--cicustom", f"user={config.cloud_init_snippet}"]
        if config.tags:
            args += ["--tags", ";".join(config.tags)]
        if len(args) == 2:
            return
        await self._qm(vmid, *args)

    async def start(self, vmid: int) -> None:
        await self._qm(vmid, "start", str(vmid))

    async def stop(self, vmid: int) -> None:
        await self._qm(vmid, "stop", str(vmid))

    async def destroy(self, vmid: int) -> None:
        await self._qm(vmid, "destroy", str(vmid), "--purge", "1")

    async def status(self, vmid: int) -> VMStatus:
        out = await self._qm(vmid, "status", str(vmid))
        try:
            return parse_status(out)
        except ValueError as e:
            raise AdapterError(f"status vm {vmid}: {e}") from e

    async def guest_ip(self, vmid: int) -> str | None:
        """Ask the guest agent; None while it is not up yet."""
        node = self._node or "localhost"
        path = f"/nodes/{node}/qemu/{vmid}/agent/network-get-interfaces"
        try:
            out = await self._run(self._pvesh_path, "get", path, "--output-format", "json")
        except CommandError as e:
            if "not running" in (e.stderr or "").lower():
                return None
            if is_missing_vm_error(e.stderr):
                raise VMNotFoundError(vmid) from e
            raise
        try:
            ips = parse_agent_ips(out)
        except ValueError as e:
            raise AdapterError(f"guest ip vm {vmid}: {e}") from e
        return select_ip(ips, self._agent_cidr)
