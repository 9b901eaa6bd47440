"""Workspace lease manager.

Issues ``(owner, nonce, expires_at)`` leases on workspace rows and keeps
them alive from a background task. Exclusion is the store's CAS on the
lease columns; this module only wraps it with events, metrics and the
renew cadence.
"""

import asyncio
import logging
from datetime import timedelta

from agentlab.app.metrics.collector import WORKSPACE_LEASE_TOTAL
from agentlab.core.clock import Clock, IdSource, format_timestamp
from agentlab.core.domain import DEFAULT_LEASE_TTL, EventKind, Lease, renew_interval
from agentlab.core.errors import ConflictError, NotFoundError, WorkspaceLeaseHeldError
from agentlab.core.logging_schema import LogEvent
from agentlab.infra.sqlite import Store
from agentlab.services import event_service, workspace_service

logger = logging.getLogger(__name__)


class WorkspaceLeaseManager:
    """Acquire, renew and release workspace leases."""

    def __init__(
        self,
        store: Store,
        clock: Clock | None = None,
        ids: IdSource | None = None,
        ttl: timedelta = DEFAULT_LEASE_TTL,
    ) -> None:
        self._store = store
        self._clock = clock or Clock()
        self._ids = ids or IdSource()
        self._ttl = ttl

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    async def acquire(
        self,
        workspace_id: str,
        owner: str,
        ttl: timedelta | None = None,
        job_id: str | None = None,
    ) -> Lease:
        """Take the lease with a fresh nonce.

        Raises:
            NotFoundError: If the workspace does not exist
            WorkspaceLeaseHeldError: If another owner holds an unexpired lease
        """
        ttl = ttl or self._ttl
        now = self._clock.now()
        nonce = self._ids.nonce()
        expires_at = now + ttl

        async with self._store.session() as db:
            ok = await workspace_service.try_acquire_lease(
                db, workspace_id, owner, nonce, expires_at, now=now
            )
            if not ok:
                # Distinguish a missing row from a held lease
                workspace = await workspace_service.get_workspace(db, workspace_id)
                WORKSPACE_LEASE_TOTAL.labels(operation="acquire", result="conflict").inc()
                raise WorkspaceLeaseHeldError(
                    f"workspace {workspace_id} is leased by {workspace.lease_owner}"
                )
            await event_service.record_event(
                db,
                EventKind.WORKSPACE_LEASE_ACQUIRED,
                job_id=job_id,
                payload={
                    "workspace_id": workspace_id,
                    "owner": owner,
                    "expires_at": format_timestamp(expires_at),
                },
                now=now,
            )

        WORKSPACE_LEASE_TOTAL.labels(operation="acquire", result="success").inc()
        logger.info(
            "Workspace lease acquired",
            extra={"event": LogEvent.LEASE_ACQUIRED, "workspace_id": workspace_id, "owner": owner},
        )
        return Lease(workspace_id=workspace_id, owner=owner, nonce=nonce, expires_at=expires_at)

    async def renew(self, lease: Lease, ttl: timedelta | None = None) -> Lease:
        """Extend a held lease.

        Raises:
            ConflictError: If (owner, nonce) no longer match the row
        """
        ttl = ttl or self._ttl
        now = self._clock.now()
        expires_at = now + ttl
        async with self._store.session() as db:
            ok = await workspace_service.renew_lease(
                db, lease.workspace_id, lease.owner, lease.nonce, expires_at, now=now
            )
            if not ok:
                WORKSPACE_LEASE_TOTAL.labels(operation="renew", result="conflict").inc()
                logger.warning(
                    "Workspace lease lost",
                    extra={
                        "event": LogEvent.LEASE_LOST,
                        "workspace_id": lease.workspace_id,
                        "owner": lease.owner,
                    },
                )
                raise ConflictError(f"lease on workspace {lease.workspace_id} was lost")
            await event_service.record_event(
                db,
                EventKind.WORKSPACE_LEASE_RENEWED,
                payload={
                    "workspace_id": lease.workspace_id,
                    "owner": lease.owner,
                    "expires_at": format_timestamp(expires_at),
                },
                now=now,
            )

        WORKSPACE_LEASE_TOTAL.labels(operation="renew", result="success").inc()
        return Lease(
            workspace_id=lease.workspace_id,
            owner=lease.owner,
            nonce=lease.nonce,
            expires_at=expires_at,
        )

    async def release(self, lease: Lease) -> bool:
        """Clear the lease if still ours. Returns False when it was not."""
        now = self._clock.now()
        async with self._store.session() as db:
            ok = await workspace_service.release_lease(
                db, lease.workspace_id, lease.owner, lease.nonce, now=now
            )
            if ok:
                await event_service.record_event(
                    db,
                    EventKind.WORKSPACE_LEASE_RELEASED,
                    payload={"workspace_id": lease.workspace_id, "owner": lease.owner},
                    now=now,
                )

        WORKSPACE_LEASE_TOTAL.labels(
            operation="release", result="success" if ok else "conflict"
        ).inc()
        logger.info(
            "Workspace lease released",
            extra={
                "event": LogEvent.LEASE_RELEASED,
                "workspace_id": lease.workspace_id,
                "owner": lease.owner,
                "released": ok,
            },
        )
        return ok

    async def release_stored(self, workspace_id: str, owner: str) -> bool:
        """Release using the nonce stored on the row.

        Used when the in-memory Lease is gone (daemon restart). Only a
        lease still held by ``owner`` is cleared.
        """
        async with self._store.session() as db:
            try:
                workspace = await workspace_service.get_workspace(db, workspace_id)
            except NotFoundError:
                return False
        if workspace.lease_owner != owner or not (workspace.lease_nonce or "").strip():
            return False
        return await self.release(
            Lease(
                workspace_id=workspace_id,
                owner=owner,
                nonce=workspace.lease_nonce,
                expires_at=workspace.lease_expires_at,
            )
        )

    async def adopt(self, workspace_id: str, owner: str) -> Lease | None:
        """Return the unexpired lease ``owner`` already holds, if any."""
        now = self._clock.now()
        async with self._store.session() as db:
            workspace = await workspace_service.get_workspace(db, workspace_id)
        if workspace.lease_owner != owner or not (workspace.lease_nonce or "").strip():
            return None
        if workspace.lease_expires_at is None or workspace.lease_expires_at <= now:
            return None
        return Lease(
            workspace_id=workspace_id,
            owner=owner,
            nonce=workspace.lease_nonce,
            expires_at=workspace.lease_expires_at,
        )

    async def keep_alive(self, lease: Lease, ttl: timedelta | None = None) -> None:
        """Renew every ``renew_interval(ttl)`` until cancelled or lost.

        A failed renew other than a lost lease is logged and retried on
        the next interval.
        """
        ttl = ttl or self._ttl
        interval = renew_interval(ttl).total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                lease = await self.renew(lease, ttl)
            except ConflictError:
                return
            except Exception as e:
                WORKSPACE_LEASE_TOTAL.labels(operation="renew", result="error").inc()
                logger.warning(
                    "Workspace lease renew failed: %s",
                    e,
                    extra={
                        "event": LogEvent.OPERATION_FAILED,
                        "workspace_id": lease.workspace_id,
                        "owner": lease.owner,
                    },
                )

    def start_keep_alive(self, lease: Lease, ttl: timedelta | None = None) -> asyncio.Task:
        return asyncio.create_task(
            self.keep_alive(lease, ttl), name=f"lease-keepalive-{lease.workspace_id}"
        )

    @staticmethod
    async def stop_keep_alive(task: asyncio.Task) -> None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
