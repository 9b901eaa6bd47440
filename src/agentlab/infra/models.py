"""Database models for agentlab.

Models are defined using SQLModel (SQLAlchemy + Pydantic) and map onto
the tables created by ``agentlab.infra.migrations``; they never create
tables themselves.

Note: Enum values are stored as strings.
      Use core.domain enums for type-safe operations in service layer.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, Text
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from agentlab.core.clock import format_timestamp, parse_timestamp


class RFC3339Text(TypeDecorator):
    """datetime <-> fixed-width RFC3339-nano UTC text."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            return format_timestamp(parse_timestamp(value))
        return format_timestamp(value)

    def process_result_value(self, value, dialect):
        if value is None or value == "":
            return None
        return parse_timestamp(value)


def _ts(name: str, nullable: bool = False) -> Column:
    return Column(name, RFC3339Text(), nullable=nullable)


class Sandbox(SQLModel, table=True):
    """Controller-managed VM instance."""

    __tablename__ = "sandboxes"

    vmid: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    name: str
    profile: str
    state: str
    ip: str | None = None
    workspace_id: str | None = None
    keepalive: bool = False
    lease_expires_at: datetime | None = Field(default=None, sa_column=_ts("lease_expires_at", True))
    created_at: datetime = Field(sa_column=_ts("created_at"))
    updated_at: datetime = Field(sa_column=_ts("updated_at"))
    last_used_at: datetime | None = Field(default=None, sa_column=_ts("last_used_at", True))


class Job(SQLModel, table=True):
    """Requested unit of work bound to one sandbox."""

    __tablename__ = "jobs"

    id: str = Field(primary_key=True)
    repo_url: str
    ref: str
    profile: str
    task: str | None = None
    mode: str | None = None
    ttl_minutes: int | None = None
    keepalive: bool = False
    status: str
    sandbox_vmid: int | None = Field(default=None, foreign_key="sandboxes.vmid")
    workspace_id: str | None = None
    session_id: str | None = None
    created_at: datetime = Field(sa_column=_ts("created_at"))
    updated_at: datetime = Field(sa_column=_ts("updated_at"))
    result_json: str | None = None


class Workspace(SQLModel, table=True):
    """Persistent volume reusable across sandbox lifetimes."""

    __tablename__ = "workspaces"

    id: str = Field(primary_key=True)
    name: str = Field(unique=True)
    storage: str
    volume_id: str
    size_gb: int
    attached_vmid: int | None = None
    lease_owner: str | None = None
    lease_nonce: str | None = None
    lease_expires_at: datetime | None = Field(default=None, sa_column=_ts("lease_expires_at", True))
    created_at: datetime = Field(sa_column=_ts("created_at"))
    updated_at: datetime = Field(sa_column=_ts("updated_at"))


class WorkspaceSnapshot(SQLModel, table=True):
    """Named point-in-time copy of a workspace volume."""

    __tablename__ = "workspace_snapshots"

    workspace_id: str = Field(primary_key=True, foreign_key="workspaces.id")
    name: str = Field(primary_key=True)
    backend_ref: str
    created_at: datetime = Field(sa_column=_ts("created_at"))
    meta_json: str | None = None


class Session(SQLModel, table=True):
    """Named binding of a workspace to a recurring sandbox."""

    __tablename__ = "sessions"

    id: str = Field(primary_key=True)
    name: str = Field(unique=True)
    workspace_id: str = Field(foreign_key="workspaces.id")
    current_vmid: int | None = None
    profile: str
    branch: str | None = None
    created_at: datetime = Field(sa_column=_ts("created_at"))
    updated_at: datetime = Field(sa_column=_ts("updated_at"))
    meta_json: str | None = None


class Exposure(SQLModel, table=True):
    """Sandbox port surfaced under a name."""

    __tablename__ = "exposures"

    name: str = Field(primary_key=True)
    vmid: int = Field(foreign_key="sandboxes.vmid")
    port: int
    target_ip: str
    url: str | None = None
    state: str
    created_at: datetime = Field(sa_column=_ts("created_at"))
    updated_at: datetime = Field(sa_column=_ts("updated_at"))


class BootstrapToken(SQLModel, table=True):
    """One-shot VM bootstrap credential (hash only)."""

    __tablename__ = "bootstrap_tokens"

    token: str = Field(primary_key=True)  # sha256 hex
    vmid: int
    expires_at: datetime = Field(sa_column=_ts("expires_at"))
    consumed_at: datetime | None = Field(default=None, sa_column=_ts("consumed_at", True))
    created_at: datetime = Field(sa_column=_ts("created_at"))


class ArtifactToken(SQLModel, table=True):
    """Multi-use upload credential (hash only)."""

    __tablename__ = "artifact_tokens"

    token: str = Field(primary_key=True)  # sha256 hex
    job_id: str = Field(foreign_key="jobs.id")
    vmid: int | None = None
    expires_at: datetime = Field(sa_column=_ts("expires_at"))
    created_at: datetime = Field(sa_column=_ts("created_at"))
    last_used_at: datetime | None = Field(default=None, sa_column=_ts("last_used_at", True))


class Artifact(SQLModel, table=True):
    """Uploaded file metadata. The blob lives under the artifact dir."""

    __tablename__ = "artifacts"

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(foreign_key="jobs.id")
    vmid: int | None = None
    name: str
    path: str
    size_bytes: int
    sha256: str
    mime: str | None = None
    created_at: datetime = Field(sa_column=_ts("created_at"))


class Event(SQLModel, table=True):
    """Append-only event log row."""

    __tablename__ = "events"

    id: int | None = Field(default=None, primary_key=True)
    ts: datetime = Field(sa_column=_ts("ts"))
    kind: str
    sandbox_vmid: int | None = None
    job_id: str | None = None
    msg: str | None = None
    payload: str | None = Field(default=None, sa_column=Column("json", Text, nullable=True))


class Message(SQLModel, table=True):
    """Append-only message log row scoped to a job, sandbox or workspace."""

    __tablename__ = "messages"

    id: int | None = Field(default=None, primary_key=True)
    ts: datetime = Field(sa_column=_ts("ts"))
    scope_type: str
    scope_id: str
    author: str | None = None
    kind: str
    text: str
    payload: str | None = Field(default=None, sa_column=Column("json", Text, nullable=True))


class SchemaMigration(SQLModel, table=True):
    """Applied migration record."""

    __tablename__ = "schema_migrations"

    version: int = Field(sa_column=Column("version", Integer, primary_key=True, autoincrement=False))
    name: str
    applied_at: datetime = Field(sa_column=_ts("applied_at"))
