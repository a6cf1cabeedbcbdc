"""
Bookkeeping table names and the in-memory view of a bookkeeping row.
"""

from dataclasses import dataclass
from typing import Any

# Migration system tables (logical names; the adapter's table prefix applies)
MIGRATIONS_TABLE = "migrations"
MIGRATION_LOCK_TABLE = "migrations_lock"

# Locks older than this are considered abandoned and may be taken over
STALE_LOCK_SECONDS = 300
LOCK_POLL_INTERVAL = 0.5


@dataclass
class MigrationRecord:
    """One row of the bookkeeping table.

    Attributes:
        id: Auto-increment key; insertion order within a batch
        migration: Name of the applied migration
        batch: Batch number of the migrate() call that applied it
        created_at: When the row was written (as stored by the database)
    """

    id: int
    migration: str
    batch: int
    created_at: Any = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MigrationRecord":
        return cls(
            id=int(row["id"]),
            migration=row["migration"],
            batch=int(row["batch"]),
            created_at=row.get("created_at"),
        )
