"""
Schema migration engine.

Provides versioned, reversible migrations with batch tracking, rollback,
database-level locking, failure classification and CLI tools.
"""

from schemashift.migrations.db_adapter import (
    MigrationDBAdapter,
    PostgresMigrationAdapter,
    SQLiteMigrationAdapter,
    create_migration_adapter,
)
from schemashift.migrations.exceptions import (
    DatabaseError,
    LockError,
    MigrationError,
    QueryError,
    SchemaError,
    TransactionError,
    is_retryable_error,
)
from schemashift.migrations.migration import Migration
from schemashift.migrations.runner import MigrationRunner

__all__ = [
    "DatabaseError",
    "LockError",
    "Migration",
    "MigrationDBAdapter",
    "MigrationError",
    "MigrationRunner",
    "PostgresMigrationAdapter",
    "QueryError",
    "SQLiteMigrationAdapter",
    "SchemaError",
    "TransactionError",
    "create_migration_adapter",
    "is_retryable_error",
]
