"""SandboxManager - drives sandboxes through the state machine.

Every state change goes through a store CAS; a lost CAS is logged and
reported as False, never raised. Hypervisor calls are bounded by the
configured command timeout and timed into a histogram.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from agentlab.app.metrics.collector import (
    HYPERVISOR_OPERATION_DURATION,
    SANDBOX_TRANSITION_CONFLICTS_TOTAL,
    SANDBOX_TRANSITIONS_TOTAL,
)
from agentlab.core.clock import Clock, format_timestamp
from agentlab.core.domain import OUTCOME_STATES, EventKind, SandboxState
from agentlab.core.errors import (
    AdapterError,
    ConflictError,
    LeaseNotRenewableError,
    NotFoundError,
    OperationTimeoutError,
    ValidationError,
    VMNotFoundError,
    error_payload,
)
from agentlab.core.interfaces import Hypervisor, VMConfig, VMStatus
from agentlab.core.logging_schema import ErrorClass, LogEvent
from agentlab.infra.models import Exposure, Sandbox
from agentlab.infra.sqlite import Store
from agentlab.services import event_service, exposure_service, sandbox_service, workspace_service

logger = logging.getLogger(__name__)

# Upper bound on CAS steps taken by one destroy call
MAX_DESTROY_STEPS = 6

# Upper bound on one guest agent IP lookup
GUEST_IP_TIMEOUT = 2.0

_PRE_BOOT_STATES = frozenset(
    {SandboxState.REQUESTED, SandboxState.PROVISIONING, SandboxState.BOOTING}
)
_LIVE_STATES = frozenset({SandboxState.READY, SandboxState.RUNNING}) | OUTCOME_STATES


class SandboxManager:
    """State machine driver for sandboxes."""

    def __init__(
        self,
        store: Store,
        hypervisor: Hypervisor,
        clock: Clock | None = None,
        command_timeout: timedelta = timedelta(minutes=2),
    ) -> None:
        self._store = store
        self._hv = hypervisor
        self._clock = clock or Clock()
        self._command_timeout = command_timeout

    # =========================================================================
    # State transitions
    # =========================================================================

    async def transition(
        self,
        vmid: int,
        from_state: SandboxState,
        to_state: SandboxState,
        job_id: str | None = None,
    ) -> bool:
        """CAS the sandbox state and record a ``sandbox.state`` event.

        Returns:
            False if the row was not in from_state
        """
        now = self._clock.now()
        async with self._store.session() as db:
            ok = await sandbox_service.transition_state(db, vmid, from_state, to_state, now=now)
            if not ok:
                SANDBOX_TRANSITION_CONFLICTS_TOTAL.labels(to_state=to_state.value).inc()
                logger.info(
                    "Transition skipped",
                    extra={
                        "event": LogEvent.TRANSITION_SKIPPED,
                        "vmid": vmid,
                        "from_state": from_state.value,
                        "to_state": to_state.value,
                    },
                )
                return False
            await event_service.record_event(
                db,
                EventKind.SANDBOX_STATE,
                sandbox_vmid=vmid,
                job_id=job_id,
                msg=f"{from_state.value} -> {to_state.value}",
                payload={"from": from_state.value, "to": to_state.value},
                now=now,
            )

        SANDBOX_TRANSITIONS_TOTAL.labels(
            from_state=from_state.value, to_state=to_state.value
        ).inc()
        logger.info(
            "State changed",
            extra={
                "event": LogEvent.STATE_CHANGED,
                "vmid": vmid,
                "job_id": job_id,
                "from_state": from_state.value,
                "to_state": to_state.value,
            },
        )
        return True

    async def require_transition(
        self,
        vmid: int,
        from_state: SandboxState,
        to_state: SandboxState,
        job_id: str | None = None,
        already: frozenset[SandboxState] = frozenset(),
    ) -> None:
        """Like transition(), but a lost CAS raises ConflictError.

        A lost CAS is accepted when the row already sits in one of
        ``already``, e.g. after StateReconciler moved it forward.
        """
        if not await self.transition(vmid, from_state, to_state, job_id=job_id):
            if already:
                async with self._store.session() as db:
                    sandbox = await sandbox_service.get_sandbox(db, vmid)
                if SandboxState(sandbox.state) in already:
                    return
            raise ConflictError(
                f"sandbox {vmid} is not {from_state.value}; cannot move to {to_state.value}"
            )

    # =========================================================================
    # Hypervisor calls
    # =========================================================================

    async def _call(
        self, operation: str, vmid: int, fn: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Run one adapter call under the command timeout."""
        start = time.monotonic()
        status = "success"
        try:
            async with asyncio.timeout(self._command_timeout.total_seconds()):
                return await fn()
        except TimeoutError as e:
            status = "error"
            logger.error(
                "Operation timeout",
                extra={
                    "event": LogEvent.OPERATION_TIMEOUT,
                    "vmid": vmid,
                    "operation": operation,
                    "error_class": ErrorClass.TIMEOUT,
                    "timeout_s": self._command_timeout.total_seconds(),
                },
            )
            raise OperationTimeoutError(
                f"{operation} vm {vmid} timed out after {self._command_timeout}"
            ) from e
        except Exception:
            status = "error"
            raise
        finally:
            HYPERVISOR_OPERATION_DURATION.labels(operation=operation, status=status).observe(
                time.monotonic() - start
            )

    async def provision(
        self,
        vmid: int,
        name: str,
        template_vmid: int,
        config: VMConfig,
        job_id: str | None = None,
    ) -> None:
        """REQUESTED -> PROVISIONING -> clone/configure/start -> BOOTING."""
        await self.require_transition(
            vmid, SandboxState.REQUESTED, SandboxState.PROVISIONING, job_id=job_id
        )
        await self._call("clone", vmid, lambda: self._hv.clone(template_vmid, vmid, name))
        await self._call("configure", vmid, lambda: self._hv.configure(vmid, config))
        await self._call("start", vmid, lambda: self._hv.start(vmid))
        await self.require_transition(
            vmid,
            SandboxState.PROVISIONING,
            SandboxState.BOOTING,
            job_id=job_id,
            already=frozenset({SandboxState.BOOTING, SandboxState.READY}),
        )

    async def _stop_vm(self, vmid: int) -> None:
        try:
            await self._call("stop", vmid, lambda: self._hv.stop(vmid))
        except VMNotFoundError:
            logger.info("VM %d already gone on stop", vmid)

    async def _destroy_vm(self, vmid: int) -> None:
        try:
            await self._call("destroy", vmid, lambda: self._hv.destroy(vmid))
        except VMNotFoundError:
            logger.info("VM %d already gone on destroy", vmid)

    # =========================================================================
    # Stop / destroy / expire
    # =========================================================================

    async def stop(self, vmid: int) -> None:
        """Stop a READY or RUNNING sandbox. STOPPED is a no-op.

        Raises:
            NotFoundError: If the sandbox is missing or DESTROYED
            ValidationError: From any other state
        """
        async with self._store.session() as db:
            sandbox = await sandbox_service.get_sandbox(db, vmid)
        state = SandboxState(sandbox.state)
        if state == SandboxState.DESTROYED:
            raise NotFoundError(f"sandbox {vmid} is destroyed")
        if state == SandboxState.STOPPED:
            return
        if state not in (SandboxState.READY, SandboxState.RUNNING):
            raise ValidationError(f"cannot stop sandbox in state {state.value}")
        await self._stop_vm(vmid)
        await self.require_transition(vmid, state, SandboxState.STOPPED)

    async def destroy(self, vmid: int, job_id: str | None = None) -> Sandbox:
        """Walk the sandbox to DESTROYED, then detach its workspace.

        Pre-boot states fail first; live states stop the VM and move to
        STOPPED; STOPPED destroys the VM. A lost CAS re-reads the row
        and continues from wherever it landed.

        Raises:
            NotFoundError: If the sandbox does not exist
            ConflictError: If the row kept moving under us
            AdapterError, OperationTimeoutError: If the hypervisor fails
        """
        try:
            sandbox = await self._destroy_steps(vmid, job_id)
        except Exception as e:
            async with self._store.session() as db:
                await event_service.record_event(
                    db,
                    EventKind.SANDBOX_DESTROY_FAILED,
                    sandbox_vmid=vmid,
                    job_id=job_id,
                    msg=str(e) or type(e).__name__,
                    payload=error_payload(e),
                    now=self._clock.now(),
                )
            raise

        await self._detach_workspace(sandbox)
        async with self._store.session() as db:
            await event_service.record_event(
                db,
                EventKind.SANDBOX_DESTROY_COMPLETED,
                sandbox_vmid=vmid,
                job_id=job_id,
                now=self._clock.now(),
            )
        return sandbox

    async def _destroy_steps(self, vmid: int, job_id: str | None) -> Sandbox:
        for _ in range(MAX_DESTROY_STEPS):
            async with self._store.session() as db:
                sandbox = await sandbox_service.get_sandbox(db, vmid)
            state = SandboxState(sandbox.state)

            if state == SandboxState.DESTROYED:
                return sandbox
            if state in _PRE_BOOT_STATES:
                target = SandboxState.FAILED
            elif state in _LIVE_STATES:
                await self._stop_vm(vmid)
                target = SandboxState.STOPPED
            else:
                await self._destroy_vm(vmid)
                target = SandboxState.DESTROYED
            await self.transition(vmid, state, target, job_id=job_id)
        raise ConflictError(f"sandbox {vmid} did not settle in DESTROYED")

    async def _detach_workspace(self, sandbox: Sandbox) -> None:
        now = self._clock.now()
        async with self._store.session() as db:
            workspace = None
            if sandbox.workspace_id:
                workspace = await workspace_service.get_workspace(db, sandbox.workspace_id)
            else:
                workspace = await workspace_service.get_workspace_by_attached_vmid(
                    db, sandbox.vmid
                )
            if workspace is not None:
                await workspace_service.detach(db, workspace.id, sandbox.vmid, now=now)
            if sandbox.workspace_id:
                await sandbox_service.update_workspace(db, sandbox.vmid, None, now=now)

    async def expire(self, vmid: int, job_id: str | None = None) -> Sandbox:
        """Lease expiry path: BOOTING/RUNNING go to TIMEOUT, then destroy."""
        async with self._store.session() as db:
            sandbox = await sandbox_service.get_sandbox(db, vmid)
        state = SandboxState(sandbox.state)
        if state in (SandboxState.BOOTING, SandboxState.RUNNING):
            await self.transition(vmid, state, SandboxState.TIMEOUT, job_id=job_id)
        return await self.destroy(vmid, job_id=job_id)

    # =========================================================================
    # Lease / activity
    # =========================================================================

    async def set_lease(self, vmid: int, ttl: timedelta) -> datetime:
        """Push the sandbox lease to now + ttl and mark it used."""
        now = self._clock.now()
        expires_at = now + ttl
        async with self._store.session() as db:
            await sandbox_service.update_lease_expires_at(db, vmid, expires_at, now=now)
            await sandbox_service.touch_last_used(db, vmid, now=now)
            await event_service.record_event(
                db,
                EventKind.SANDBOX_LEASE,
                sandbox_vmid=vmid,
                payload={"expires_at": format_timestamp(expires_at)},
                now=now,
            )
        logger.info(
            "Sandbox lease renewed",
            extra={"event": LogEvent.LEASE_RENEWED, "vmid": vmid, "ttl_s": ttl.total_seconds()},
        )
        return expires_at

    async def renew_lease(self, vmid: int, ttl: timedelta) -> datetime:
        """Extend the lease of a keepalive sandbox.

        Keepalive makes a lease renewable; it never removes the deadline,
        so an abandoned keepalive sandbox is still reclaimed on expiry.

        Raises:
            ValidationError: If ttl is not positive
            NotFoundError: If the sandbox is missing or DESTROYED
            LeaseNotRenewableError: If keepalive is off
        """
        if ttl <= timedelta(0):
            raise ValidationError("ttl must be positive")
        async with self._store.session() as db:
            sandbox = await sandbox_service.get_sandbox(db, vmid)
        if sandbox.state == SandboxState.DESTROYED.value:
            raise NotFoundError(f"sandbox {vmid} is destroyed")
        if not sandbox.keepalive:
            raise LeaseNotRenewableError(f"sandbox {vmid} is not keepalive")
        return await self.set_lease(vmid, ttl)

    async def set_keepalive(self, vmid: int, keepalive: bool) -> None:
        """Toggle keepalive. The lease deadline is left as it is."""
        async with self._store.session() as db:
            await sandbox_service.update_keepalive(db, vmid, keepalive, now=self._clock.now())

    # =========================================================================
    # Hypervisor state
    # =========================================================================

    async def vm_status(self, vmid: int) -> VMStatus:
        """Power state as the hypervisor sees it.

        Raises:
            VMNotFoundError: If the VM does not exist
        """
        return await self._call("status", vmid, lambda: self._hv.status(vmid))

    async def vm_guest_ip(self, vmid: int, timeout: float = GUEST_IP_TIMEOUT) -> str | None:
        """Guest agent IP, or None when the agent has nothing yet."""
        try:
            async with asyncio.timeout(timeout):
                ip = await self._call("guest_ip", vmid, lambda: self._hv.guest_ip(vmid))
        except (TimeoutError, AdapterError, OperationTimeoutError) as e:
            logger.debug("No guest IP for VM %d: %s", vmid, e)
            return None
        return (ip or "").strip() or None

    # =========================================================================
    # Exposures
    # =========================================================================

    async def expose(self, name: str, vmid: int, port: int, url: str | None = None) -> Exposure:
        """Publish a sandbox port under a name."""
        now = self._clock.now()
        async with self._store.session() as db:
            sandbox = await sandbox_service.get_sandbox(db, vmid)
            if not sandbox.ip:
                raise ConflictError(f"sandbox {vmid} has no IP yet")
            exposure = await exposure_service.create_exposure(
                db, name, vmid, port, sandbox.ip, state="active", url=url, now=now
            )
            await event_service.record_event(
                db,
                EventKind.EXPOSURE_CREATE,
                sandbox_vmid=vmid,
                payload={"name": name, "port": port, "target_ip": sandbox.ip},
                now=now,
            )
        return exposure

    async def unexpose(self, name: str) -> None:
        async with self._store.session() as db:
            exposure = await exposure_service.get_exposure(db, name)
            await exposure_service.delete_exposure(db, name)
            await event_service.record_event(
                db,
                EventKind.EXPOSURE_DELETE,
                sandbox_vmid=exposure.vmid,
                payload={"name": name},
                now=self._clock.now(),
            )
