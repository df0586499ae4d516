"""starrecall database layer."""

from starrecall.db.checkpoint import CheckpointPolicy, CheckpointStatus
from starrecall.db.connection import Database
from starrecall.db.migrations import MIGRATIONS, run_migrations
from starrecall.db.repository import IndexRepository
from starrecall.db.schema import SchemaIntegrityError, heal_schema, initialize

__all__ = [
    "CheckpointPolicy",
    "CheckpointStatus",
    "Database",
    "IndexRepository",
    "SchemaIntegrityError",
    "heal_schema",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
]
