"""ArtifactGC - removes artifacts past their profile retention window.

An artifact is eligible when its job is terminal, its sandbox is gone or
DESTROYED, and ``(job.updated_at or artifact.created_at) + retention``
is at or before now. Profiles without an ``artifacts`` retention key
keep their artifacts forever.
"""

import asyncio
import logging
import posixpath
from datetime import datetime, timedelta
from pathlib import Path

from agentlab.app.metrics.collector import ARTIFACT_GC_REMOVED_TOTAL
from agentlab.app.profiles import Profile
from agentlab.control.artifact_upload import job_dir, safe_join, sanitize_artifact_path
from agentlab.control.coordinator.base import CoordinatorBase
from agentlab.core.clock import Clock
from agentlab.core.domain import EventKind, SandboxState, is_terminal_job_status
from agentlab.core.logging_schema import LogEvent
from agentlab.infra.sqlite import Store
from agentlab.services import artifact_service, event_service
from agentlab.services.artifact_service import RetentionRecord

logger = logging.getLogger(__name__)


def is_expired(record: RetentionRecord, retention: timedelta, now: datetime) -> bool:
    """Apply the retention policy to one candidate."""
    if not is_terminal_job_status(record.job_status):
        return False
    if record.sandbox_state and record.sandbox_state != SandboxState.DESTROYED.value:
        return False
    base = record.job_updated_at or record.artifact.created_at
    if base is None:
        return False
    return base + retention <= now


def _remove_file(path: Path) -> None:
    path.unlink(missing_ok=True)


def _remove_dir_if_empty(path: Path) -> None:
    try:
        path.rmdir()
    except OSError:
        pass


class ArtifactGC(CoordinatorBase):
    """Periodic artifact retention."""

    INTERVAL = 600.0

    def __init__(
        self,
        store: Store,
        profiles: dict[str, Profile],
        artifact_dir: str | Path,
        clock: Clock | None = None,
        interval: float | None = None,
        min_interval: float | None = None,
    ) -> None:
        super().__init__(interval=interval, min_interval=min_interval)
        self._store = store
        self._profiles = profiles
        self._root = Path(artifact_dir)
        self._clock = clock or Clock()

    def _retention(self, profile_name: str) -> timedelta | None:
        profile = self._profiles.get((profile_name or "").strip())
        if profile is None:
            return None
        return profile.artifact_retention

    async def tick(self) -> None:
        async with self._store.session() as db:
            candidates = await artifact_service.list_retention_candidates(db)
        if not candidates:
            return

        now = self._clock.now()
        deleted = 0
        unknown_profiles: set[str] = set()
        for record in candidates:
            retention = self._retention(record.job_profile)
            if retention is None:
                if record.job_profile not in self._profiles:
                    unknown_profiles.add(record.job_profile)
                continue
            if not is_expired(record, retention, now):
                continue
            try:
                await self._delete(record, now)
            except Exception as e:
                logger.warning(
                    "[%s] Failed to delete artifact %s of job %s: %s",
                    self.name,
                    record.artifact.id,
                    record.artifact.job_id,
                    e,
                    extra={"event": LogEvent.GC_FAILED},
                )
                continue
            deleted += 1

        for name in sorted(unknown_profiles):
            logger.warning("[%s] Unknown profile %r; artifacts kept", self.name, name)
        if deleted:
            ARTIFACT_GC_REMOVED_TOTAL.inc(deleted)
            logger.info(
                "[%s] Removed %d artifacts",
                self.name,
                deleted,
                extra={"event": LogEvent.GC_COMPLETE},
            )

    async def _delete(self, record: RetentionRecord, now: datetime) -> None:
        artifact = record.artifact
        rel_path = sanitize_artifact_path(artifact.path)
        directory = job_dir(self._root, artifact.job_id)
        target = safe_join(directory, rel_path)

        await asyncio.to_thread(_remove_file, target)
        name = artifact.name.strip() or posixpath.basename(artifact.path)
        async with self._store.session() as db:
            await artifact_service.delete_artifact(db, artifact.id)
            await event_service.record_event(
                db,
                EventKind.ARTIFACT_GC,
                sandbox_vmid=record.sandbox_vmid,
                job_id=artifact.job_id,
                msg=f"artifact GC removed {name}",
                payload={"name": name, "vmid": record.sandbox_vmid, "path": artifact.path},
                now=now,
            )
        # Only succeeds once the job has no files left
        await asyncio.to_thread(_remove_dir_if_empty, directory)
