"""Artifact upload: guest pushes files for its job with an artifact token.

Files land under ``<artifact_dir>/<job_id>/<path>``. The write goes to a
temp file that is renamed into place only after size and SHA-256 match,
so a rejected upload never leaves a partial file at the final path.
"""

import asyncio
import hashlib
import logging
import mimetypes
import os
import posixpath
import secrets
from pathlib import Path

from pydantic import BaseModel

from agentlab.app.metrics.collector import ARTIFACT_UPLOAD_BYTES
from agentlab.core.clock import Clock
from agentlab.core.domain import EventKind
from agentlab.core.errors import (
    ExpiredError,
    NotFoundError,
    StorageIOError,
    ValidationError,
)
from agentlab.core.logging_schema import LogEvent
from agentlab.infra.sqlite import Store
from agentlab.services import artifact_service, event_service
from agentlab.services.token_service import ArtifactTokenService, hash_token

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 256 * 1024 * 1024


class ArtifactMetadata(BaseModel):
    name: str
    path: str
    size_bytes: int
    sha256: str
    mime: str | None = None


class ArtifactUploadResponse(BaseModel):
    job_id: str
    artifact: ArtifactMetadata


def sanitize_artifact_path(raw: str) -> str:
    """Normalize a guest-supplied relative path.

    Raises:
        ValidationError: On empty, absolute or traversing paths
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValidationError("artifact path is required")
    if "\x00" in raw:
        raise ValidationError("artifact path contains invalid characters")
    cleaned = posixpath.normpath(raw.replace("\\", "/"))
    if cleaned in ("", "."):
        raise ValidationError("artifact path is required")
    if cleaned.startswith("/"):
        raise ValidationError("artifact path must be relative")
    if cleaned == ".." or cleaned.startswith("../"):
        raise ValidationError("artifact path must not traverse")
    return cleaned


def job_dir(root: str | Path, job_id: str) -> Path:
    job_id = (job_id or "").strip()
    if not job_id:
        raise ValidationError("job id is required")
    if "/" in job_id or os.sep in job_id or job_id in (".", ".."):
        raise ValidationError("job id contains invalid path characters")
    return Path(root) / job_id


def safe_join(root: Path, rel: str) -> Path:
    """Join rel under root, refusing anything that escapes it."""
    base = Path(os.path.normpath(root))
    target = Path(os.path.normpath(base / rel))
    try:
        relative = target.relative_to(base)
    except ValueError as e:
        raise ValidationError("artifact path must remain within job directory") from e
    if str(relative) in ("", "."):
        raise ValidationError("artifact path must remain within job directory")
    return target


def _write_atomically(target: Path, content: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(f"{target.name}.tmp-{secrets.token_hex(4)}")
    try:
        with open(tmp, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


class ArtifactUploadService:
    """Accepts artifact uploads for jobs."""

    def __init__(
        self,
        store: Store,
        artifact_dir: str | Path,
        max_bytes: int = DEFAULT_MAX_BYTES,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._root = Path(artifact_dir)
        self._max_bytes = max_bytes if max_bytes > 0 else DEFAULT_MAX_BYTES
        self._clock = clock or Clock()

    async def upload(
        self,
        token: str,
        job_id: str,
        name: str,
        size: int,
        sha256: str,
        content: bytes,
        mime: str | None = None,
    ) -> ArtifactUploadResponse:
        """Store one artifact.

        Raises:
            ValidationError: Bad path, size mismatch, oversize or digest mismatch
            NotFoundError: Unknown token, or token bound to another job
            ExpiredError: Token past its expiry
            StorageIOError: Writing the file failed
        """
        now = self._clock.now()
        token_hash = hash_token(token)
        async with self._store.session() as db:
            record = await ArtifactTokenService.get(db, token_hash)
        if record.expires_at <= now:
            raise ExpiredError("artifact token expired")
        if record.job_id != job_id:
            raise NotFoundError("artifact token does not belong to this job")

        if size <= 0 or not content:
            raise ValidationError("artifact body is empty")
        if size > self._max_bytes or len(content) > self._max_bytes:
            raise ValidationError(f"artifact exceeds {self._max_bytes} bytes")
        if size != len(content):
            raise ValidationError(f"artifact size {len(content)} does not match declared {size}")
        digest = hashlib.sha256(content).hexdigest()
        if digest != (sha256 or "").strip().lower():
            logger.warning(
                "Artifact digest mismatch",
                extra={"event": LogEvent.ARTIFACT_REJECTED, "job_id": job_id, "path": name},
            )
            raise ValidationError("artifact sha256 does not match content")

        rel_path = sanitize_artifact_path(name)
        target = safe_join(job_dir(self._root, job_id), rel_path)
        try:
            await asyncio.to_thread(_write_atomically, target, content)
        except OSError as e:
            raise StorageIOError(f"failed to write artifact: {e}") from e

        mime = (mime or "").split(";")[0].strip() or mimetypes.guess_type(rel_path)[0]
        async with self._store.session() as db:
            try:
                artifact = await artifact_service.create_artifact(
                    db,
                    job_id=job_id,
                    name=posixpath.basename(rel_path),
                    path=rel_path,
                    size_bytes=size,
                    sha256=digest,
                    vmid=record.vmid,
                    mime=mime,
                    now=now,
                )
            except Exception:
                target.unlink(missing_ok=True)
                raise
            await event_service.record_event(
                db,
                EventKind.ARTIFACT_UPLOAD,
                sandbox_vmid=record.vmid,
                job_id=job_id,
                msg=f"artifact uploaded: {rel_path}",
                payload={"path": rel_path, "size_bytes": size, "sha256": digest},
                now=now,
            )
            await ArtifactTokenService.touch(db, token_hash, now)

        ARTIFACT_UPLOAD_BYTES.inc(size)
        logger.info(
            "Artifact stored",
            extra={
                "event": LogEvent.ARTIFACT_STORED,
                "job_id": job_id,
                "path": rel_path,
                "size_bytes": size,
            },
        )
        return ArtifactUploadResponse(
            job_id=job_id,
            artifact=ArtifactMetadata(
                name=artifact.name,
                path=artifact.path,
                size_bytes=artifact.size_bytes,
                sha256=artifact.sha256,
                mime=artifact.mime,
            ),
        )
