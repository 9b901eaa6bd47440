"""Ordered, append-only schema migrations.

Each migration runs inside one transaction together with the row that
records it in ``schema_migrations``. Versions are never renumbered or
edited once released; schema changes are new entries at the end.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from agentlab.core.clock import format_timestamp, utc_now
from agentlab.core.errors import StorageIOError
from agentlab.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        name="init_core_tables",
        statements=(
            """CREATE TABLE IF NOT EXISTS sandboxes (
                vmid INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                profile TEXT NOT NULL,
                state TEXT NOT NULL,
                ip TEXT,
                workspace_id TEXT,
                keepalive INTEGER NOT NULL DEFAULT 0,
                lease_expires_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )""",
            """CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                repo_url TEXT NOT NULL,
                ref TEXT NOT NULL,
                profile TEXT NOT NULL,
                status TEXT NOT NULL,
                sandbox_vmid INTEGER REFERENCES sandboxes(vmid) ON DELETE SET NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                result_json TEXT
            )""",
            """CREATE TABLE IF NOT EXISTS workspaces (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                storage TEXT NOT NULL,
                volume_id TEXT NOT NULL,
                size_gb INTEGER NOT NULL,
                attached_vmid INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )""",
            """CREATE TABLE IF NOT EXISTS bootstrap_tokens (
                token TEXT PRIMARY KEY,
                vmid INTEGER NOT NULL,
                expires_at TEXT NOT NULL,
                consumed_at TEXT,
                created_at TEXT NOT NULL
            )""",
            """CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts TEXT NOT NULL,
                kind TEXT NOT NULL,
                sandbox_vmid INTEGER,
                job_id TEXT,
                msg TEXT,
                json TEXT
            )""",
            "CREATE INDEX IF NOT EXISTS idx_sandboxes_state ON sandboxes(state)",
            "CREATE INDEX IF NOT EXISTS idx_sandboxes_profile ON sandboxes(profile)",
            "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)",
            "CREATE INDEX IF NOT EXISTS idx_jobs_sandbox ON jobs(sandbox_vmid)",
            "CREATE INDEX IF NOT EXISTS idx_workspaces_attached ON workspaces(attached_vmid)",
            "CREATE INDEX IF NOT EXISTS idx_bootstrap_tokens_vmid ON bootstrap_tokens(vmid)",
            "CREATE INDEX IF NOT EXISTS idx_events_sandbox ON events(sandbox_vmid)",
            "CREATE INDEX IF NOT EXISTS idx_events_job ON events(job_id)",
        ),
    ),
    Migration(
        version=2,
        name="add_job_spec_fields",
        statements=(
            "ALTER TABLE jobs ADD COLUMN task TEXT",
            "ALTER TABLE jobs ADD COLUMN mode TEXT",
            "ALTER TABLE jobs ADD COLUMN ttl_minutes INTEGER",
            "ALTER TABLE jobs ADD COLUMN keepalive INTEGER NOT NULL DEFAULT 0",
        ),
    ),
    Migration(
        version=3,
        name="add_artifacts",
        statements=(
            """CREATE TABLE IF NOT EXISTS artifact_tokens (
                token TEXT PRIMARY KEY,
                job_id TEXT NOT NULL,
                vmid INTEGER,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_used_at TEXT,
                FOREIGN KEY(job_id) REFERENCES jobs(id) ON DELETE CASCADE
            )""",
            "CREATE INDEX IF NOT EXISTS idx_artifact_tokens_job ON artifact_tokens(job_id)",
            "CREATE INDEX IF NOT EXISTS idx_artifact_tokens_vmid ON artifact_tokens(vmid)",
            """CREATE TABLE IF NOT EXISTS artifacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                vmid INTEGER,
                name TEXT NOT NULL,
                path TEXT NOT NULL,
                size_bytes INTEGER NOT NULL,
                sha256 TEXT NOT NULL,
                mime TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(job_id) REFERENCES jobs(id) ON DELETE CASCADE
            )""",
            "CREATE INDEX IF NOT EXISTS idx_artifacts_job ON artifacts(job_id)",
            "CREATE INDEX IF NOT EXISTS idx_artifacts_vmid ON artifacts(vmid)",
        ),
    ),
    Migration(
        version=4,
        name="add_sandbox_last_used_at",
        statements=("ALTER TABLE sandboxes ADD COLUMN last_used_at TEXT",),
    ),
    Migration(
        version=5,
        name="add_exposures",
        statements=(
            """CREATE TABLE IF NOT EXISTS exposures (
                name TEXT PRIMARY KEY,
                vmid INTEGER NOT NULL,
                port INTEGER NOT NULL,
                target_ip TEXT NOT NULL,
                url TEXT,
                state TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(vmid) REFERENCES sandboxes(vmid) ON DELETE CASCADE
            )""",
            "CREATE INDEX IF NOT EXISTS idx_exposures_vmid ON exposures(vmid)",
        ),
    ),
    Migration(
        version=6,
        name="add_workspace_leases",
        statements=(
            "ALTER TABLE workspaces ADD COLUMN lease_owner TEXT",
            "ALTER TABLE workspaces ADD COLUMN lease_nonce TEXT",
            "ALTER TABLE workspaces ADD COLUMN lease_expires_at TEXT",
            "CREATE INDEX IF NOT EXISTS idx_workspaces_lease_expires ON workspaces(lease_expires_at)",
        ),
    ),
    Migration(
        version=7,
        name="add_sessions",
        statements=(
            """CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                workspace_id TEXT NOT NULL,
                current_vmid INTEGER,
                profile TEXT NOT NULL,
                branch TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                meta_json TEXT,
                FOREIGN KEY(workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE
            )""",
            "CREATE INDEX IF NOT EXISTS idx_sessions_workspace ON sessions(workspace_id)",
            "ALTER TABLE jobs ADD COLUMN workspace_id TEXT",
            "ALTER TABLE jobs ADD COLUMN session_id TEXT",
            "CREATE INDEX IF NOT EXISTS idx_jobs_workspace ON jobs(workspace_id)",
            "CREATE INDEX IF NOT EXISTS idx_jobs_session ON jobs(session_id)",
        ),
    ),
    Migration(
        version=8,
        name="add_messages",
        statements=(
            """CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts TEXT NOT NULL,
                scope_type TEXT NOT NULL,
                scope_id TEXT NOT NULL,
                author TEXT,
                kind TEXT NOT NULL,
                text TEXT NOT NULL,
                json TEXT
            )""",
            "CREATE INDEX IF NOT EXISTS idx_messages_scope ON messages(scope_type, scope_id, id)",
        ),
    ),
    Migration(
        version=9,
        name="add_workspace_snapshots",
        statements=(
            """CREATE TABLE IF NOT EXISTS workspace_snapshots (
                workspace_id TEXT NOT NULL,
                name TEXT NOT NULL,
                backend_ref TEXT NOT NULL,
                created_at TEXT NOT NULL,
                meta_json TEXT,
                PRIMARY KEY (workspace_id, name),
                FOREIGN KEY(workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE
            )""",
        ),
    ),
)


def validate_migrations(migrations: tuple[Migration, ...]) -> None:
    """Reject empty, non-positive, duplicate, unordered or unnamed entries.

    Raises:
        StorageIOError: If the list is malformed
    """
    if not migrations:
        raise StorageIOError("no migrations defined")
    seen: set[int] = set()
    prev = 0
    for m in migrations:
        if m.version <= 0:
            raise StorageIOError(f"migration version must be positive: {m.version}")
        if m.version in seen:
            raise StorageIOError(f"duplicate migration version {m.version}")
        if m.version < prev:
            raise StorageIOError(f"migration version {m.version} is out of order")
        if not m.name.strip():
            raise StorageIOError(f"migration {m.version} missing name")
        if not any(s.strip() for s in m.statements):
            raise StorageIOError(f"migration {m.version} has no statements")
        seen.add(m.version)
        prev = m.version


async def migrate(
    engine: AsyncEngine,
    migrations: tuple[Migration, ...] = MIGRATIONS,
) -> list[int]:
    """Apply pending migrations.

    Returns:
        Versions applied by this call (empty when already current)

    Raises:
        StorageIOError: On malformed list, unknown applied version or failed statement
    """
    validate_migrations(migrations)

    async with engine.begin() as conn:
        await conn.execute(
            text(
                """CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )"""
            )
        )
        result = await conn.execute(text("SELECT version FROM schema_migrations ORDER BY version"))
        applied = {row[0] for row in result.fetchall()}

    known = {m.version for m in migrations}
    unknown = sorted(applied - known)
    if unknown:
        raise StorageIOError(f"unknown schema migration version {unknown[0]}")

    newly_applied: list[int] = []
    for m in migrations:
        if m.version in applied:
            continue
        try:
            async with engine.begin() as conn:
                for stmt in m.statements:
                    if stmt.strip():
                        await conn.execute(text(stmt))
                await conn.execute(
                    text(
                        "INSERT INTO schema_migrations (version, name, applied_at) "
                        "VALUES (:version, :name, :applied_at)"
                    ),
                    {
                        "version": m.version,
                        "name": m.name,
                        "applied_at": format_timestamp(utc_now()),
                    },
                )
        except Exception as e:
            logger.error(
                "Migration %d (%s) failed",
                m.version,
                m.name,
                extra={"event": LogEvent.DB_ERROR, "error": str(e)},
            )
            raise StorageIOError(f"exec migration {m.version}: {e}") from e

        newly_applied.append(m.version)
        logger.info(
            "Applied migration %d (%s)",
            m.version,
            m.name,
            extra={"event": LogEvent.MIGRATION_APPLIED, "version": m.version},
        )

    return newly_applied
