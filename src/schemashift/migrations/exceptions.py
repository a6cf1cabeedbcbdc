"""
Exception classes for the migration system.

Provides one exception type per persistence failure class:

- QueryError: a failed read/write statement
- SchemaError: a failed DDL operation
- TransactionError: a failed begin/commit/rollback/savepoint
- MigrationError: an orchestration failure raised by the runner

Query and transaction errors carry enough context to decide whether a failure
is retryable (deadlock, lock timeout) or fatal. None of these types retry on
their own; retry policy belongs to the caller.
"""

from typing import Any

# Vendor error codes (MySQL numbering). Driver translators map their own
# failures onto these so the predicates work the same for every adapter.
ER_DUP_ENTRY = 1062
ER_ROW_IS_REFERENCED = 1451
ER_NO_REFERENCED_ROW = 1452
ER_LOCK_DEADLOCK = 1213
ER_LOCK_WAIT_TIMEOUT = 1205
ER_PARSE_ERROR = 1064
ER_NO_SUCH_TABLE = 1146
ER_BAD_FIELD_ERROR = 1054

SQL_MAX_LENGTH = 500
BINDING_MAX_LENGTH = 100
TRUNCATION_MARKER = "... [TRUNCATED]"
REDACTION_MARKER = "[REDACTED]"
SENSITIVE_KEYS = ("password", "secret", "token", "key", "auth")


class DatabaseError(Exception):
    """Base exception for every persistence failure."""

    pass


class QueryError(DatabaseError):
    """Raised when a read or write statement fails.

    The statement text and bindings are sanitized on construction: long SQL
    is truncated, values bound under sensitive-looking keys are redacted and
    long string values are shortened.
    """

    def __init__(
        self,
        message: str,
        sql: str = "",
        bindings: Any = None,
        sql_state: str | None = None,
        driver_error_code: int | None = None,
    ):
        self.sql = _sanitize_sql(sql)
        self.bindings = _sanitize_bindings(bindings)
        self.sql_state = sql_state
        self.driver_error_code = driver_error_code
        super().__init__(message)

    def is_duplicate_key(self) -> bool:
        return self.driver_error_code == ER_DUP_ENTRY or (
            self.sql_state is not None and self.sql_state.startswith("23")
        )

    def is_foreign_key_violation(self) -> bool:
        return self.driver_error_code in (ER_ROW_IS_REFERENCED, ER_NO_REFERENCED_ROW)

    def is_deadlock(self) -> bool:
        return self.driver_error_code == ER_LOCK_DEADLOCK or self.sql_state == "40001"

    def is_lock_timeout(self) -> bool:
        return self.driver_error_code == ER_LOCK_WAIT_TIMEOUT

    def is_retryable(self) -> bool:
        return self.is_deadlock() or self.is_lock_timeout()

    @classmethod
    def syntax_error(cls, sql: str, error: str) -> "QueryError":
        return cls(f"SQL syntax error: {error}", sql, None, "42000", ER_PARSE_ERROR)

    @classmethod
    def table_not_found(cls, table: str, sql: str = "") -> "QueryError":
        return cls(f"Table '{table}' doesn't exist", sql, None, "42S02", ER_NO_SUCH_TABLE)

    @classmethod
    def column_not_found(cls, column: str, sql: str = "") -> "QueryError":
        return cls(f"Unknown column '{column}'", sql, None, "42S22", ER_BAD_FIELD_ERROR)

    @classmethod
    def duplicate_key(cls, detail: str, sql: str = "", bindings: Any = None) -> "QueryError":
        return cls(f"Duplicate entry: {detail}", sql, bindings, "23000", ER_DUP_ENTRY)

    @classmethod
    def foreign_key_violation(cls, detail: str, sql: str = "", bindings: Any = None) -> "QueryError":
        return cls(
            f"Foreign key constraint fails: {detail}",
            sql,
            bindings,
            "23000",
            ER_NO_REFERENCED_ROW,
        )

    @classmethod
    def deadlock(cls, sql: str = "", bindings: Any = None) -> "QueryError":
        return cls(
            "Deadlock found when trying to get lock",
            sql,
            bindings,
            "40001",
            ER_LOCK_DEADLOCK,
        )

    @classmethod
    def lock_timeout(cls, sql: str = "", bindings: Any = None) -> "QueryError":
        return cls(
            "Lock wait timeout exceeded",
            sql,
            bindings,
            "HY000",
            ER_LOCK_WAIT_TIMEOUT,
        )

    @classmethod
    def from_sqlite_error(cls, exc: Exception, sql: str = "", bindings: Any = None) -> "QueryError":
        """Translate a sqlite3 exception into a classified QueryError."""
        import sqlite3

        text = str(exc)
        lowered = text.lower()

        if isinstance(exc, sqlite3.IntegrityError):
            if "unique constraint" in lowered or "primary key" in lowered:
                return cls.duplicate_key(text, sql, bindings)
            if "foreign key" in lowered:
                return cls.foreign_key_violation(text, sql, bindings)
            return cls(f"Integrity constraint violation: {text}", sql, bindings, "23000")

        if "database is locked" in lowered or "database table is locked" in lowered:
            return cls(f"Lock wait timeout exceeded: {text}", sql, bindings, "HY000", ER_LOCK_WAIT_TIMEOUT)
        if lowered.startswith("no such table"):
            table = text.split(":", 1)[-1].strip()
            error = cls.table_not_found(table, sql)
            error.bindings = _sanitize_bindings(bindings)
            return error
        if lowered.startswith("no such column"):
            column = text.split(":", 1)[-1].strip()
            error = cls.column_not_found(column, sql)
            error.bindings = _sanitize_bindings(bindings)
            return error
        if "syntax error" in lowered:
            return cls.syntax_error(sql, text)

        return cls(f"Query failed: {text}", sql, bindings)

    @classmethod
    def from_postgres_error(cls, exc: Exception, sql: str = "", bindings: Any = None) -> "QueryError":
        """Translate a psycopg exception into a classified QueryError.

        The SQLSTATE is preserved; the well-known classes are additionally
        mapped onto the vendor codes used by the predicates.
        """
        sql_state = getattr(exc, "sqlstate", None)
        text = str(exc).strip()
        driver_code = {
            "23505": ER_DUP_ENTRY,
            "23503": ER_NO_REFERENCED_ROW,
            "40P01": ER_LOCK_DEADLOCK,
            "55P03": ER_LOCK_WAIT_TIMEOUT,
            "42601": ER_PARSE_ERROR,
            "42P01": ER_NO_SUCH_TABLE,
            "42703": ER_BAD_FIELD_ERROR,
        }.get(sql_state or "")
        return cls(f"Query failed: {text}", sql, bindings, sql_state, driver_code)


class SchemaError(DatabaseError):
    """Raised when a DDL operation fails."""

    def __init__(
        self,
        message: str,
        table: str | None = None,
        column: str | None = None,
        constraint: str | None = None,
    ):
        self.table = table
        self.column = column
        self.constraint = constraint
        super().__init__(message)

    @classmethod
    def table_creation_failed(cls, table: str, reason: str) -> "SchemaError":
        return cls(f'Failed to create table "{table}": {reason}', table)

    @classmethod
    def table_already_exists(cls, table: str) -> "SchemaError":
        return cls(f'Table "{table}" already exists', table)

    @classmethod
    def table_not_found(cls, table: str) -> "SchemaError":
        return cls(f'Table "{table}" does not exist', table)

    @classmethod
    def column_add_failed(cls, table: str, column: str, reason: str) -> "SchemaError":
        return cls(f'Failed to add column "{column}" to table "{table}": {reason}', table, column)

    @classmethod
    def column_already_exists(cls, table: str, column: str) -> "SchemaError":
        return cls(f'Column "{column}" already exists in table "{table}"', table, column)

    @classmethod
    def column_not_found(cls, table: str, column: str) -> "SchemaError":
        return cls(f'Column "{column}" does not exist in table "{table}"', table, column)

    @classmethod
    def index_creation_failed(cls, table: str, index: str, reason: str) -> "SchemaError":
        return cls(
            f'Failed to create index "{index}" on table "{table}": {reason}',
            table,
            constraint=index,
        )

    @classmethod
    def foreign_key_creation_failed(cls, table: str, constraint: str, reason: str) -> "SchemaError":
        return cls(
            f'Failed to create foreign key "{constraint}" on table "{table}": {reason}',
            table,
            constraint=constraint,
        )


class TransactionError(DatabaseError):
    """Raised when a transaction or savepoint operation fails."""

    def __init__(
        self,
        message: str,
        level: int = 0,
        savepoint_name: str | None = None,
        reason: str | None = None,
    ):
        self.level = level
        self.savepoint_name = savepoint_name
        self.reason = reason
        super().__init__(message)

    def is_deadlock(self) -> bool:
        return self.reason == "deadlock"

    def is_lock_timeout(self) -> bool:
        return self.reason == "lock_timeout"

    def is_retryable(self) -> bool:
        return self.is_deadlock() or self.is_lock_timeout()

    @classmethod
    def nested_not_supported(cls, level: int = 0) -> "TransactionError":
        return cls("Nested transactions are not supported by this database driver", level)

    @classmethod
    def begin_failed(cls, reason: str, level: int = 0) -> "TransactionError":
        return cls(f"Failed to begin transaction: {reason}", level)

    @classmethod
    def commit_failed(cls, reason: str, level: int = 0) -> "TransactionError":
        return cls(f"Failed to commit transaction: {reason}", level)

    @classmethod
    def rollback_failed(cls, reason: str, level: int = 0) -> "TransactionError":
        return cls(f"Failed to rollback transaction: {reason}", level)

    @classmethod
    def no_active_transaction(cls, operation: str) -> "TransactionError":
        return cls(f"Cannot {operation}: no active transaction")

    @classmethod
    def savepoint_failed(cls, name: str, operation: str, level: int = 0) -> "TransactionError":
        return cls(f'Savepoint "{name}" {operation} failed', level, name)

    @classmethod
    def savepoint_not_found(cls, name: str, level: int = 0) -> "TransactionError":
        return cls(f'Savepoint "{name}" does not exist', level, name)

    @classmethod
    def deadlock_detected(cls, level: int = 0) -> "TransactionError":
        return cls("Deadlock detected, transaction rolled back", level, reason="deadlock")

    @classmethod
    def lock_timeout(cls, level: int = 0) -> "TransactionError":
        return cls("Lock wait timeout exceeded", level, reason="lock_timeout")

    @classmethod
    def isolation_change_active(cls, level: int = 0) -> "TransactionError":
        return cls("Cannot change isolation level during an active transaction", level)

    @classmethod
    def isolation_not_supported(cls, isolation: str, db_type: str) -> "TransactionError":
        return cls(f"Isolation level {isolation} is not supported by {db_type}")

    @classmethod
    def isolation_failed(cls, reason: str) -> "TransactionError":
        return cls(f"Failed to set transaction isolation level: {reason}")


class MigrationError(DatabaseError):
    """Base exception for migration orchestration errors."""

    def __init__(self, message: str, migration_name: str | None = None):
        self.migration_name = migration_name
        super().__init__(message)

    @classmethod
    def migration_failed(cls, name: str, cause: BaseException) -> "MigrationError":
        return cls(f"Migration [{name}] failed: {cause}", name)

    @classmethod
    def rollback_failed(cls, name: str, cause: BaseException) -> "MigrationError":
        return cls(f"Rollback of migration [{name}] failed: {cause}", name)

    @classmethod
    def migration_not_found(cls, name: str) -> "MigrationError":
        return cls(f"Migration [{name}] not found", name)

    @classmethod
    def migration_already_ran(cls, name: str) -> "MigrationError":
        return cls(f"Migration [{name}] has already been executed", name)

    @classmethod
    def migration_not_ran(cls, name: str) -> "MigrationError":
        return cls(f"Migration [{name}] has not been executed and cannot be rolled back", name)

    @classmethod
    def invalid_migration(cls, name: str, reason: str) -> "MigrationError":
        return cls(f"Invalid migration [{name}]: {reason}", name)

    @classmethod
    def load_failed(cls, path: str, reason: str) -> "MigrationError":
        return cls(f"Failed to load migrations from [{path}]: {reason}")

    @classmethod
    def generate_failed(cls, name: str, reason: str) -> "MigrationError":
        return cls(f"Failed to generate migration [{name}]: {reason}", name)


class LockError(MigrationError):
    """Raised when migration lock cannot be acquired or released."""

    pass


def is_retryable_error(exc: BaseException | None) -> bool:
    """Return True if ``exc`` or anything in its cause chain is retryable."""
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, (QueryError, TransactionError)) and exc.is_retryable():
            return True
        exc = exc.__cause__ or exc.__context__
    return False


def _sanitize_sql(sql: str | None) -> str:
    if not sql:
        return ""
    if len(sql) > SQL_MAX_LENGTH:
        return sql[:SQL_MAX_LENGTH] + TRUNCATION_MARKER
    return sql


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str) and len(value) > BINDING_MAX_LENGTH:
        return value[:BINDING_MAX_LENGTH] + TRUNCATION_MARKER
    return value


def _sanitize_bindings(bindings: Any) -> Any:
    if bindings is None:
        return []
    if isinstance(bindings, dict):
        sanitized = {}
        for key, value in bindings.items():
            key_lower = str(key).lower()
            if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
                sanitized[key] = REDACTION_MARKER
            else:
                sanitized[key] = _sanitize_value(value)
        return sanitized
    return [_sanitize_value(value) for value in bindings]
