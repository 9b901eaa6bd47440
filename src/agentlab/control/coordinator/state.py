"""StateReconciler - lines sandbox rows up with what the hypervisor reports.

Per non-destroyed sandbox, each tick:
- VM missing on the hypervisor: hand the row to ``reclaim`` (job FAILED,
  row destroyed). REQUESTED and PROVISIONING rows are skipped; their VM
  does not exist until the clone finishes.
- VM stopped while RUNNING: RUNNING -> FAILED.
- VM running while the row is still pre-boot (a crash mid-provisioning):
  step forward one transition at a time, stopping at READY so the
  bootstrap handoff still owns READY -> RUNNING.
- VM running without a recorded IP: ask the guest agent and store it.
"""

import logging
from collections.abc import Awaitable, Callable

from agentlab.control.coordinator.base import CoordinatorBase
from agentlab.control.sandbox_manager import SandboxManager
from agentlab.core.clock import Clock
from agentlab.core.domain import SandboxState
from agentlab.core.errors import AgentLabError, VMNotFoundError
from agentlab.core.interfaces import VMStatus
from agentlab.core.logging_schema import LogEvent
from agentlab.infra.models import Sandbox
from agentlab.infra.sqlite import Store
from agentlab.services import sandbox_service

logger = logging.getLogger(__name__)

_SKIP_STATES = frozenset({SandboxState.DESTROYED, SandboxState.COMPLETED})
_CLONE_PENDING_STATES = frozenset({SandboxState.REQUESTED, SandboxState.PROVISIONING})

# Next step toward READY for a row whose VM is already running
_TOWARD_READY = {
    SandboxState.REQUESTED: SandboxState.PROVISIONING,
    SandboxState.PROVISIONING: SandboxState.BOOTING,
    SandboxState.BOOTING: SandboxState.READY,
}


class StateReconciler(CoordinatorBase):
    """Periodic sandbox/hypervisor state reconciliation."""

    INTERVAL = 60.0

    def __init__(
        self,
        store: Store,
        sandboxes: SandboxManager,
        reclaim: Callable[[int, BaseException], Awaitable[None]],
        clock: Clock | None = None,
        interval: float | None = None,
        min_interval: float | None = None,
    ) -> None:
        super().__init__(interval=interval, min_interval=min_interval)
        self._store = store
        self._sandboxes = sandboxes
        self._reclaim = reclaim
        self._clock = clock or Clock()

    async def tick(self) -> None:
        async with self._store.session() as db:
            rows = await sandbox_service.list_sandboxes(db, include_destroyed=False)

        changed = 0
        failed = 0
        for sandbox in rows:
            if SandboxState(sandbox.state) in _SKIP_STATES:
                continue
            try:
                if await self._reconcile(sandbox):
                    changed += 1
            except Exception as e:
                failed += 1
                logger.warning("[%s] Failed to reconcile sandbox %d: %s", self.name, sandbox.vmid, e)

        if changed or failed:
            logger.info(
                "[%s] Reconciled: changed=%d, failed=%d",
                self.name,
                changed,
                failed,
                extra={"event": LogEvent.RECONCILE_COMPLETE},
            )

    async def _reconcile(self, sandbox: Sandbox) -> bool:
        """Returns True when the row was changed."""
        vmid = sandbox.vmid
        state = SandboxState(sandbox.state)
        try:
            status = await self._sandboxes.vm_status(vmid)
        except VMNotFoundError as e:
            if state in _CLONE_PENDING_STATES:
                return False
            logger.warning(
                "[%s] VM %d missing on hypervisor; reclaiming sandbox",
                self.name,
                vmid,
                extra={"event": LogEvent.STATE_CHANGED, "vmid": vmid, "state": state.value},
            )
            await self._reclaim(vmid, e)
            return True
        except AgentLabError as e:
            logger.debug("[%s] Status of VM %d unavailable: %s", self.name, vmid, e)
            return False

        if status == VMStatus.STOPPED and state == SandboxState.RUNNING:
            logger.warning("[%s] VM %d stopped unexpectedly", self.name, vmid)
            return await self._sandboxes.transition(vmid, state, SandboxState.FAILED)

        if status != VMStatus.RUNNING:
            return False

        changed = False
        for _ in range(len(_TOWARD_READY)):
            target = _TOWARD_READY.get(state)
            if target is None:
                break
            if not await self._sandboxes.transition(vmid, state, target):
                break
            state = target
            changed = True

        if not (sandbox.ip or "").strip():
            ip = await self._sandboxes.vm_guest_ip(vmid)
            if ip:
                async with self._store.session() as db:
                    await sandbox_service.update_ip(db, vmid, ip, now=self._clock.now())
                logger.info("[%s] Recorded IP %s for VM %d", self.name, ip, vmid)
                changed = True
        return changed
