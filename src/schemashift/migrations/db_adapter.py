"""
Database adapter interface for migrations.

Provides an abstract interface for the schema/connection operations the
migration system needs. Migrations receive an adapter as their only argument,
so they can be written once and run against SQLite or PostgreSQL.

Every adapter call that reaches the driver translates driver failures into
QueryError, so callers only ever see the schemashift error taxonomy.
"""

import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Sequence

from schemashift.config.logging_config import get_logger
from schemashift.migrations.exceptions import QueryError, SchemaError
from schemashift.migrations.query import QueryBuilder, validate_identifier
from schemashift.migrations.transaction import TransactionManager

log = get_logger(__name__)


class MigrationDBAdapter(ABC):
    """Abstract database adapter interface for migrations.

    The adapter wraps a database-specific connection object and provides
    a unified interface for:
    - Executing SQL statements ('?' placeholders everywhere)
    - Transaction management (commit/rollback, savepoints via transaction())
    - Schema introspection (table/column/index existence)
    - Schema changes (create/drop tables, columns, indexes, foreign keys)

    Table names passed to introspection, DDL and query-builder methods are
    logical names; the adapter's ``table_prefix`` is applied to them.
    """

    supports_savepoints = True

    def __init__(self, table_prefix: str = ""):
        self._table_prefix = table_prefix or ""
        self._transaction: TransactionManager | None = None

    @property
    def table_prefix(self) -> str:
        return self._table_prefix

    def full_table_name(self, name: str) -> str:
        """Return the physical table name for a logical one."""
        return f"{self._table_prefix}{name}"

    @abstractmethod
    async def execute(self, sql: str, params: tuple[Any, ...] | None = None) -> Any:
        """Execute a SQL statement.

        Args:
            sql: SQL statement to execute. Use '?' for parameter placeholders.
            params: Optional tuple of parameters to bind.

        Returns:
            Database-specific cursor or result object.

        Raises:
            QueryError: If the driver rejects the statement.
        """
        pass

    @abstractmethod
    async def executemany(self, sql: str, params_list: list[tuple[Any, ...]]) -> None:
        """Execute a SQL statement multiple times with different parameters."""
        pass

    @abstractmethod
    async def fetchone(self, sql: str, params: tuple[Any, ...] | None = None) -> dict[str, Any] | None:
        """Execute a query and fetch one row as a dict, or None if no row."""
        pass

    @abstractmethod
    async def fetchall(self, sql: str, params: tuple[Any, ...] | None = None) -> list[dict[str, Any]]:
        """Execute a query and fetch all rows as dicts."""
        pass

    async def begin(self) -> None:
        """Open a transaction on the underlying connection.

        Drivers that start transactions implicitly on the first statement
        leave this as a no-op.
        """
        pass

    @abstractmethod
    async def commit(self) -> None:
        """Commit the current transaction."""
        pass

    @abstractmethod
    async def rollback(self) -> None:
        """Rollback the current transaction."""
        pass

    @abstractmethod
    async def table_exists(self, table_name: str) -> bool:
        """Check if a table exists in the database."""
        pass

    @abstractmethod
    async def column_exists(self, table_name: str, column_name: str) -> bool:
        """Check if a column exists in a table."""
        pass

    @abstractmethod
    async def get_columns(self, table_name: str) -> list[str]:
        """Get list of column names in a table."""
        pass

    @abstractmethod
    async def index_exists(self, index_name: str) -> bool:
        """Check if an index exists."""
        pass

    @abstractmethod
    def get_rowcount(self) -> int:
        """Get the number of rows affected by the last statement."""
        pass

    @property
    @abstractmethod
    def db_type(self) -> str:
        """Get the database type identifier ('sqlite', 'postgres')."""
        pass

    def query(self) -> QueryBuilder:
        """Start a new query builder bound to this adapter."""
        return QueryBuilder(self)

    def transaction(self) -> TransactionManager:
        """Return the transaction manager for this adapter's connection."""
        if self._transaction is None:
            self._transaction = TransactionManager(self)
        return self._transaction

    # -------------------------------------------------------------------------
    # Schema changes
    # -------------------------------------------------------------------------

    async def create_table(self, table_name: str, definition: str) -> None:
        """Create a table from a column/constraint definition list.

        Example:
            await db.create_table("users", "id INTEGER PRIMARY KEY, email TEXT NOT NULL")

        Raises:
            SchemaError: If the table already exists or creation fails.
        """
        validate_identifier(table_name)
        full_name = self.full_table_name(table_name)
        if await self.table_exists(table_name):
            raise SchemaError.table_already_exists(full_name)
        try:
            await self.execute(f"CREATE TABLE {full_name} ({definition})")
        except QueryError as e:
            raise SchemaError.table_creation_failed(full_name, str(e)) from e
        log.debug(f"Created table {full_name}")

    async def drop_table(self, table_name: str) -> None:
        """Drop a table, raising SchemaError if it does not exist."""
        validate_identifier(table_name)
        full_name = self.full_table_name(table_name)
        if not await self.table_exists(table_name):
            raise SchemaError.table_not_found(full_name)
        await self.execute(f"DROP TABLE {full_name}")
        log.debug(f"Dropped table {full_name}")

    async def drop_table_if_exists(self, table_name: str) -> None:
        validate_identifier(table_name)
        await self.execute(f"DROP TABLE IF EXISTS {self.full_table_name(table_name)}")

    async def add_column(self, table_name: str, column_name: str, definition: str) -> None:
        """Add a column to an existing table.

        Raises:
            SchemaError: If the table is missing, the column already exists,
                or the ALTER statement fails.
        """
        validate_identifier(table_name)
        validate_identifier(column_name)
        full_name = self.full_table_name(table_name)
        if not await self.table_exists(table_name):
            raise SchemaError.table_not_found(full_name)
        if await self.column_exists(table_name, column_name):
            raise SchemaError.column_already_exists(full_name, column_name)
        try:
            await self.execute(f"ALTER TABLE {full_name} ADD COLUMN {column_name} {definition}")
        except QueryError as e:
            raise SchemaError.column_add_failed(full_name, column_name, str(e)) from e

    async def drop_column(self, table_name: str, column_name: str) -> None:
        validate_identifier(table_name)
        validate_identifier(column_name)
        full_name = self.full_table_name(table_name)
        if not await self.table_exists(table_name):
            raise SchemaError.table_not_found(full_name)
        if not await self.column_exists(table_name, column_name):
            raise SchemaError.column_not_found(full_name, column_name)
        await self.execute(f"ALTER TABLE {full_name} DROP COLUMN {column_name}")

    async def create_index(
        self,
        table_name: str,
        index_name: str,
        columns: str | Sequence[str],
        unique: bool = False,
    ) -> None:
        """Create an index on one or more columns.

        Raises:
            SchemaError: If the CREATE INDEX statement fails.
        """
        validate_identifier(table_name)
        validate_identifier(index_name)
        if isinstance(columns, str):
            columns = [columns]
        column_list = ", ".join(validate_identifier(column) for column in columns)
        full_name = self.full_table_name(table_name)
        kind = "UNIQUE INDEX" if unique else "INDEX"
        try:
            await self.execute(f"CREATE {kind} {index_name} ON {full_name} ({column_list})")
        except QueryError as e:
            raise SchemaError.index_creation_failed(full_name, index_name, str(e)) from e

    async def add_foreign_key(
        self,
        table_name: str,
        constraint_name: str,
        columns: str | Sequence[str],
        referenced_table: str,
        referenced_columns: str | Sequence[str],
        on_delete: str | None = None,
    ) -> None:
        """Add a named foreign key constraint to an existing table.

        Raises:
            SchemaError: If the constraint cannot be created.
        """
        validate_identifier(table_name)
        validate_identifier(constraint_name)
        validate_identifier(referenced_table)
        if isinstance(columns, str):
            columns = [columns]
        if isinstance(referenced_columns, str):
            referenced_columns = [referenced_columns]
        full_name = self.full_table_name(table_name)
        sql = (
            f"ALTER TABLE {full_name} ADD CONSTRAINT {constraint_name} "
            f"FOREIGN KEY ({', '.join(validate_identifier(c) for c in columns)}) "
            f"REFERENCES {self.full_table_name(referenced_table)} "
            f"({', '.join(validate_identifier(c) for c in referenced_columns)})"
        )
        if on_delete:
            sql += f" ON DELETE {on_delete}"
        try:
            await self.execute(sql)
        except QueryError as e:
            raise SchemaError.foreign_key_creation_failed(full_name, constraint_name, str(e)) from e


class SQLiteMigrationAdapter(MigrationDBAdapter):
    """SQLite implementation of the migration database adapter."""

    def __init__(self, connection: Any, table_prefix: str = ""):
        """Initialize with an aiosqlite connection.

        Args:
            connection: aiosqlite.Connection object.
            table_prefix: Prefix applied to every logical table name.
        """
        super().__init__(table_prefix)
        self._conn = connection
        self._last_cursor = None

    async def _run(self, sql: str, params: tuple[Any, ...] | None = None) -> Any:
        try:
            if params:
                return await self._conn.execute(sql, params)
            return await self._conn.execute(sql)
        except sqlite3.Error as e:
            raise QueryError.from_sqlite_error(e, sql, params) from e

    async def execute(self, sql: str, params: tuple[Any, ...] | None = None) -> Any:
        """Execute a SQL statement."""
        self._last_cursor = await self._run(sql, params)
        return self._last_cursor

    async def executemany(self, sql: str, params_list: list[tuple[Any, ...]]) -> None:
        """Execute a SQL statement multiple times."""
        try:
            self._last_cursor = await self._conn.executemany(sql, params_list)
        except sqlite3.Error as e:
            raise QueryError.from_sqlite_error(e, sql) from e

    async def fetchone(self, sql: str, params: tuple[Any, ...] | None = None) -> dict[str, Any] | None:
        """Execute a query and fetch one row."""
        cursor = await self._run(sql, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        # Convert to dict using cursor.description
        columns = [desc[0] for desc in cursor.description]
        return dict(zip(columns, row))

    async def fetchall(self, sql: str, params: tuple[Any, ...] | None = None) -> list[dict[str, Any]]:
        """Execute a query and fetch all rows."""
        cursor = await self._run(sql, params)
        rows = await cursor.fetchall()
        if not rows:
            return []
        columns = [desc[0] for desc in cursor.description]
        return [dict(zip(columns, row)) for row in rows]

    async def begin(self) -> None:
        """Start an explicit transaction.

        sqlite3 does not implicitly open a transaction before DDL, so the
        schema change and its bookkeeping row would otherwise commit apart.
        """
        if self._conn.in_transaction:
            return
        await self._run("BEGIN")

    async def commit(self) -> None:
        """Commit the current transaction."""
        try:
            await self._conn.commit()
        except sqlite3.Error as e:
            raise QueryError.from_sqlite_error(e, "COMMIT") from e

    async def rollback(self) -> None:
        """Rollback the current transaction."""
        try:
            await self._conn.rollback()
        except sqlite3.Error as e:
            raise QueryError.from_sqlite_error(e, "ROLLBACK") from e

    async def table_exists(self, table_name: str) -> bool:
        """Check if a table exists in SQLite."""
        result = await self.fetchone(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (self.full_table_name(table_name),),
        )
        return result is not None

    async def column_exists(self, table_name: str, column_name: str) -> bool:
        """Check if a column exists in a SQLite table."""
        columns = await self.get_columns(table_name)
        return column_name in columns

    async def get_columns(self, table_name: str) -> list[str]:
        """Get list of column names in a SQLite table."""
        validate_identifier(table_name)
        rows = await self.fetchall(f"PRAGMA table_info({self.full_table_name(table_name)})")
        return [row["name"] for row in rows]

    async def index_exists(self, index_name: str) -> bool:
        """Check if an index exists in SQLite."""
        result = await self.fetchone(
            "SELECT name FROM sqlite_master WHERE type='index' AND name=?",
            (index_name,),
        )
        return result is not None

    async def add_foreign_key(
        self,
        table_name: str,
        constraint_name: str,
        columns: str | Sequence[str],
        referenced_table: str,
        referenced_columns: str | Sequence[str],
        on_delete: str | None = None,
    ) -> None:
        """SQLite cannot add constraints to existing tables."""
        raise SchemaError.foreign_key_creation_failed(
            self.full_table_name(table_name),
            constraint_name,
            "SQLite does not support adding foreign keys to an existing table; "
            "declare them in create_table()",
        )

    def get_rowcount(self) -> int:
        """Get the number of rows affected."""
        if self._last_cursor is None:
            return 0
        return self._last_cursor.rowcount

    @property
    def db_type(self) -> str:
        """Return database type."""
        return "sqlite"


class PostgresMigrationAdapter(MigrationDBAdapter):
    """PostgreSQL implementation of the migration database adapter.

    PostgreSQL opens a transaction implicitly on the first statement and
    supports transactional DDL, so begin() is a no-op here.
    """

    def __init__(self, pool: Any, table_prefix: str = ""):
        """Initialize with a psycopg pool.

        Args:
            pool: AsyncConnectionPool from psycopg_pool.
            table_prefix: Prefix applied to every logical table name.
        """
        super().__init__(table_prefix)
        self._pool = pool
        self._conn = None
        self._rowcount = 0

    async def _ensure_connection(self):
        """Ensure we have an active connection."""
        if self._conn is None:
            self._conn = await self._pool.getconn()

    async def _run(
        self,
        sql: str,
        params: tuple[Any, ...] | None = None,
        fetch: str | None = None,
    ) -> Any:
        import psycopg
        from psycopg.rows import dict_row

        await self._ensure_connection()
        # Convert ? placeholders to PostgreSQL %s style
        pg_sql = sql.replace("?", "%s")
        try:
            async with self._conn.cursor(row_factory=dict_row) as cursor:
                if params:
                    await cursor.execute(pg_sql, params)
                else:
                    await cursor.execute(pg_sql)
                self._rowcount = cursor.rowcount
                if fetch == "one":
                    return await cursor.fetchone()
                if fetch == "all":
                    return await cursor.fetchall()
                return cursor
        except psycopg.Error as e:
            raise QueryError.from_postgres_error(e, sql, params) from e

    async def execute(self, sql: str, params: tuple[Any, ...] | None = None) -> Any:
        """Execute a SQL statement."""
        return await self._run(sql, params)

    async def executemany(self, sql: str, params_list: list[tuple[Any, ...]]) -> None:
        """Execute a SQL statement multiple times."""
        import psycopg

        await self._ensure_connection()
        try:
            async with self._conn.cursor() as cursor:
                await cursor.executemany(sql.replace("?", "%s"), params_list)
                self._rowcount = cursor.rowcount
        except psycopg.Error as e:
            raise QueryError.from_postgres_error(e, sql) from e

    async def fetchone(self, sql: str, params: tuple[Any, ...] | None = None) -> dict[str, Any] | None:
        """Execute a query and fetch one row."""
        return await self._run(sql, params, fetch="one")

    async def fetchall(self, sql: str, params: tuple[Any, ...] | None = None) -> list[dict[str, Any]]:
        """Execute a query and fetch all rows."""
        return await self._run(sql, params, fetch="all") or []

    async def commit(self) -> None:
        """Commit the current transaction."""
        import psycopg

        if self._conn:
            try:
                await self._conn.commit()
            except psycopg.Error as e:
                raise QueryError.from_postgres_error(e, "COMMIT") from e

    async def rollback(self) -> None:
        """Rollback the current transaction."""
        import psycopg

        if self._conn:
            try:
                await self._conn.rollback()
            except psycopg.Error as e:
                raise QueryError.from_postgres_error(e, "ROLLBACK") from e

    async def table_exists(self, table_name: str) -> bool:
        """Check if a table exists in PostgreSQL."""
        result = await self.fetchone(
            "SELECT EXISTS (SELECT FROM information_schema.tables WHERE table_name = ?)",
            (self.full_table_name(table_name),),
        )
        return result["exists"] if result else False

    async def column_exists(self, table_name: str, column_name: str) -> bool:
        """Check if a column exists in a PostgreSQL table."""
        result = await self.fetchone(
            """
            SELECT EXISTS (
                SELECT FROM information_schema.columns
                WHERE table_name = ? AND column_name = ?
            )
            """,
            (self.full_table_name(table_name), column_name),
        )
        return result["exists"] if result else False

    async def get_columns(self, table_name: str) -> list[str]:
        """Get list of column names in a PostgreSQL table."""
        rows = await self.fetchall(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_name = ?
            ORDER BY ordinal_position
            """,
            (self.full_table_name(table_name),),
        )
        return [row["column_name"] for row in rows]

    async def index_exists(self, index_name: str) -> bool:
        """Check if an index exists in PostgreSQL."""
        result = await self.fetchone(
            "SELECT EXISTS (SELECT FROM pg_indexes WHERE indexname = ?)",
            (index_name,),
        )
        return result["exists"] if result else False

    def get_rowcount(self) -> int:
        """Get the number of rows affected."""
        return self._rowcount

    @property
    def db_type(self) -> str:
        """Return database type."""
        return "postgres"

    async def close(self) -> None:
        """Return the connection to the pool."""
        if self._conn:
            await self._pool.putconn(self._conn)
            self._conn = None


def create_migration_adapter(connection: Any, table_prefix: str = "") -> MigrationDBAdapter:
    """Factory function to create the appropriate migration adapter.

    Args:
        connection: Database connection object (aiosqlite.Connection or
                   psycopg_pool.AsyncConnectionPool)
        table_prefix: Prefix applied to every logical table name.

    Returns:
        MigrationDBAdapter implementation.

    Raises:
        TypeError: If the connection type is not supported.
    """
    module_name = type(connection).__module__.lower()

    if "sqlite" in module_name:
        return SQLiteMigrationAdapter(connection, table_prefix)

    # Check for psycopg pool
    if hasattr(connection, "getconn") and hasattr(connection, "putconn"):
        return PostgresMigrationAdapter(connection, table_prefix)

    if "psycopg" in module_name or "postgres" in module_name:
        return PostgresMigrationAdapter(connection, table_prefix)

    raise TypeError(
        f"Unsupported database connection type: {type(connection)}. "
        "Expected aiosqlite.Connection or psycopg_pool.AsyncConnectionPool."
    )
