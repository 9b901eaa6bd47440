"""Bootstrap and artifact token services.

Both token kinds are stored as the SHA-256 hex digest of the trimmed
plaintext. Plaintext is handed to the caller once by ``issue`` and is
never persisted or logged.
"""

import hashlib
import secrets
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agentlab.core.clock import utc_now
from agentlab.core.errors import NotFoundError, ValidationError
from agentlab.infra.models import ArtifactToken, BootstrapToken
from agentlab.infra.sqlite import translate_integrity_error

TOKEN_BYTES = 16
DEFAULT_BOOTSTRAP_TTL = timedelta(minutes=10)
DEFAULT_ARTIFACT_TTL = timedelta(hours=6)


def hash_token(plaintext: str) -> str:
    """SHA-256 hex of the whitespace-trimmed plaintext."""
    trimmed = (plaintext or "").strip()
    if not trimmed:
        raise ValidationError("token is required")
    return hashlib.sha256(trimmed.encode("utf-8")).hexdigest()


def new_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


class BootstrapTokenService:
    """One-shot VM bootstrap credentials."""

    @staticmethod
    async def create(
        db: AsyncSession,
        token_hash: str,
        vmid: int,
        expires_at: datetime,
        now: datetime | None = None,
    ) -> BootstrapToken:
        """Insert a token row.

        Raises:
            ValidationError: If hash is empty, vmid <= 0 or expires_at unset
            ConflictError: If the hash already exists
        """
        if not token_hash or not token_hash.strip():
            raise ValidationError("bootstrap token hash is required")
        if vmid <= 0:
            raise ValidationError("vmid must be positive")
        if expires_at is None:
            raise ValidationError("bootstrap token expires_at is required")

        row = BootstrapToken(
            token=token_hash.strip(),
            vmid=vmid,
            expires_at=expires_at,
            created_at=now or utc_now(),
        )
        db.add(row)
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            raise translate_integrity_error(e, "bootstrap token") from e
        return row

    @staticmethod
    async def issue(
        db: AsyncSession,
        vmid: int,
        ttl: timedelta = DEFAULT_BOOTSTRAP_TTL,
        now: datetime | None = None,
    ) -> tuple[str, BootstrapToken]:
        """Create a fresh token and return (plaintext, row)."""
        now = now or utc_now()
        plaintext = new_token()
        row = await BootstrapTokenService.create(
            db, hash_token(plaintext), vmid, now + ttl, now=now
        )
        return plaintext, row

    @staticmethod
    async def get(db: AsyncSession, token_hash: str) -> BootstrapToken:
        result = await db.execute(
            select(BootstrapToken).where(BootstrapToken.token == token_hash)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError("bootstrap token not found")
        return row

    @staticmethod
    async def validate(
        db: AsyncSession, token_hash: str, vmid: int, now: datetime
    ) -> bool:
        """True iff the row exists for vmid, is unconsumed and unexpired."""
        stmt = select(BootstrapToken.token).where(
            BootstrapToken.token == token_hash,
            BootstrapToken.vmid == vmid,
            BootstrapToken.consumed_at.is_(None),
            BootstrapToken.expires_at > now,
        )
        result = await db.execute(stmt)
        return result.first() is not None

    @staticmethod
    async def consume(
        db: AsyncSession, token_hash: str, vmid: int, now: datetime
    ) -> bool:
        """Atomically mark the token consumed.

        Returns:
            True on the first successful call, False afterwards or when
            the token is unknown, bound to another vmid, or expired
        """
        stmt = (
            update(BootstrapToken)
            .where(
                BootstrapToken.token == token_hash,
                BootstrapToken.vmid == vmid,
                BootstrapToken.consumed_at.is_(None),
                BootstrapToken.expires_at > now,
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        await db.commit()
        return result.rowcount == 1


class ArtifactTokenService:
    """Multi-use upload credentials, valid until expiry."""

    @staticmethod
    async def create(
        db: AsyncSession,
        token_hash: str,
        job_id: str,
        vmid: int,
        expires_at: datetime,
        now: datetime | None = None,
    ) -> ArtifactToken:
        """Insert a token row.

        Raises:
            ValidationError: If hash/job_id empty, vmid <= 0 or expires_at unset
            ForeignKeyError: If the job does not exist
        """
        if not token_hash or not token_hash.strip():
            raise ValidationError("artifact token hash is required")
        if not job_id or not job_id.strip():
            raise ValidationError("artifact token job_id is required")
        if vmid <= 0:
            raise ValidationError("vmid must be positive")
        if expires_at is None:
            raise ValidationError("artifact token expires_at is required")

        row = ArtifactToken(
            token=token_hash.strip(),
            job_id=job_id,
            vmid=vmid,
            expires_at=expires_at,
            created_at=now or utc_now(),
        )
        db.add(row)
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            raise translate_integrity_error(e, "artifact token") from e
        return row

    @staticmethod
    async def issue(
        db: AsyncSession,
        job_id: str,
        vmid: int,
        ttl: timedelta = DEFAULT_ARTIFACT_TTL,
        now: datetime | None = None,
    ) -> tuple[str, ArtifactToken]:
        """Create a fresh token and return (plaintext, row)."""
        now = now or utc_now()
        plaintext = new_token()
        row = await ArtifactTokenService.create(
            db, hash_token(plaintext), job_id, vmid, now + ttl, now=now
        )
        return plaintext, row

    @staticmethod
    async def get(db: AsyncSession, token_hash: str) -> ArtifactToken:
        """Full row by hash.

        Raises:
            NotFoundError: If the hash is unknown
        """
        result = await db.execute(
            select(ArtifactToken).where(ArtifactToken.token == token_hash)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError("artifact token not found")
        return row

    @staticmethod
    async def touch(db: AsyncSession, token_hash: str, now: datetime) -> None:
        """Record use. A missing row is not an error."""
        await db.execute(
            update(ArtifactToken)
            .where(ArtifactToken.token == token_hash)
            .values(last_used_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
