"""Infrastructure (SQLite store, migrations, table models)."""

from agentlab.infra.migrations import MIGRATIONS, Migration, migrate, validate_migrations
from agentlab.infra.sqlite import Store, translate_integrity_error

__all__ = [
    # Store
    "Store",
    "translate_integrity_error",
    # Migrations
    "MIGRATIONS",
    "Migration",
    "migrate",
    "validate_migrations",
]
