"""SQLite store handle.

One writer connection (``pool_size=1``), WAL journaling, enforced
foreign keys and a 5 s busy timeout. Transactions are started with an
explicit ``BEGIN`` so DDL in migrations is transactional too.
"""

import logging
from pathlib import Path

from sqlalchemy import event, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from agentlab.core.errors import (
    AgentLabError,
    ConflictError,
    ForeignKeyError,
    StorageIOError,
    ValidationError,
)
from agentlab.core.logging_schema import LogEvent
from agentlab.infra.migrations import MIGRATIONS, Migration, migrate

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5000


def _install_pragmas(engine: AsyncEngine, busy_timeout_ms: int) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:
        # Disable the driver's implicit transaction handling; "begin" below owns it
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


class Store:
    """Handle to the controller database.

    Usage:
        store = await Store.open("/var/lib/agentlab/agentlab.db")
        await store.migrate()
        async with store.session() as db:
            sandbox = await sandbox_service.get_sandbox(db, 1001)
        await store.close()
    """

    def __init__(self, engine: AsyncEngine, path: Path) -> None:
        self._engine = engine
        self._path = path
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    async def open(
        cls,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        echo: bool = False,
    ) -> "Store":
        """Open (creating if needed) the database file.

        Raises:
            ValidationError: If path is empty
            StorageIOError: If the file cannot be opened
        """
        if not str(path).strip():
            raise ValidationError("db path is required")
        db_path = Path(path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"create db dir {db_path.parent}: {e}") from e

        engine = create_async_engine(
            f"sqlite+aiosqlite:///{db_path}",
            echo=echo,
            pool_size=1,
            max_overflow=0,
            connect_args={"timeout": busy_timeout_ms / 1000},
        )
        _install_pragmas(engine, busy_timeout_ms)

        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(
                "SQLite open failed",
                extra={
                    "event": LogEvent.DB_ERROR,
                    "path": str(db_path),
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            await engine.dispose()
            raise StorageIOError(f"open db {db_path}: {e}") from e

        logger.info(
            "SQLite connected",
            extra={
                "event": LogEvent.DB_CONNECTED,
                "path": str(db_path),
                "busy_timeout_ms": busy_timeout_ms,
            },
        )
        return cls(engine, db_path)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def path(self) -> Path:
        return self._path

    def session(self) -> AsyncSession:
        """New AsyncSession bound to the writer connection."""
        return self._session_factory()

    async def migrate(self, migrations: tuple[Migration, ...] = MIGRATIONS) -> list[int]:
        return await migrate(self._engine, migrations)

    async def close(self) -> None:
        await self._engine.dispose()


def translate_integrity_error(exc: IntegrityError, what: str) -> AgentLabError:
    """Map a SQLite constraint failure onto the error taxonomy."""
    detail = str(exc.orig) if exc.orig is not None else str(exc)
    if "FOREIGN KEY" in detail.upper():
        return ForeignKeyError(f"{what}: referenced row does not exist")
    if "UNIQUE" in detail.upper() or "PRIMARY KEY" in detail.upper():
        return ConflictError(f"{what}: already exists")
    return StorageIOError(f"{what}: {detail}")
