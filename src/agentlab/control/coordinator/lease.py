"""LeaseReconciler - expires sandboxes whose lease has passed.

Each tick walks ``list_expired(now)`` in ascending vmid and hands every
sandbox to the expire path. One failing sandbox is logged and skipped;
the rest of the batch still runs. Expired workspace leases are only
counted: an expired lease is already free for the next try_acquire.
"""

import logging
from collections.abc import Awaitable, Callable

from agentlab.app.metrics.collector import EXPIRED_SANDBOXES
from agentlab.control.coordinator.base import CoordinatorBase
from agentlab.core.clock import Clock, format_timestamp
from agentlab.core.domain import EventKind
from agentlab.core.logging_schema import LogEvent
from agentlab.infra.sqlite import Store
from agentlab.services import event_service, sandbox_service, workspace_service

logger = logging.getLogger(__name__)


class LeaseReconciler(CoordinatorBase):
    """Periodic sandbox lease expiry."""

    INTERVAL = 30.0

    def __init__(
        self,
        store: Store,
        expire: Callable[[int], Awaitable[None]],
        clock: Clock | None = None,
        interval: float | None = None,
        min_interval: float | None = None,
    ) -> None:
        super().__init__(interval=interval, min_interval=min_interval)
        self._store = store
        self._expire = expire
        self._clock = clock or Clock()

    async def tick(self) -> None:
        now = self._clock.now()
        async with self._store.session() as db:
            expired = await sandbox_service.list_expired(db, now)
            stale_leases = await workspace_service.list_expired_leases(db, now)

        EXPIRED_SANDBOXES.set(len(expired))
        failed = 0
        for sandbox in expired:
            try:
                async with self._store.session() as db:
                    await event_service.record_event(
                        db,
                        EventKind.SANDBOX_LEASE_EXPIRED,
                        sandbox_vmid=sandbox.vmid,
                        payload={"expires_at": format_timestamp(sandbox.lease_expires_at)},
                        now=now,
                    )
                logger.info(
                    "Sandbox lease expired",
                    extra={"event": LogEvent.LEASE_EXPIRED, "vmid": sandbox.vmid},
                )
                await self._expire(sandbox.vmid)
            except Exception as e:
                failed += 1
                logger.warning("[%s] Failed to expire sandbox %d: %s", self.name, sandbox.vmid, e)

        if expired or stale_leases:
            logger.info(
                "[%s] Reconciled: expired=%d, failed=%d, stale_workspace_leases=%d",
                self.name,
                len(expired),
                failed,
                len(stale_leases),
                extra={"event": LogEvent.RECONCILE_COMPLETE},
            )
