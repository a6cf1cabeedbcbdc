"""
Migration runner for the schemashift migration engine.

Provides the core MigrationRunner class that handles:
- Migration registration, discovery and ordering
- Migration execution with transaction safety
- Batch tracking in the bookkeeping table
- Database-level locking for multi-instance deployments
- Rollback, reset and refresh
- Status reporting and scaffolding of new migration files

The runner is database-agnostic and works with SQLite and PostgreSQL through
the MigrationDBAdapter interface.
"""

import asyncio
import os
import socket
import time
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable

from schemashift.config.logging_config import get_logger
from schemashift.migrations.db_adapter import (
    MigrationDBAdapter,
    create_migration_adapter,
)
from schemashift.migrations.discovery import load_migrations_from_path
from schemashift.migrations.exceptions import (
    DatabaseError,
    LockError,
    MigrationError,
)
from schemashift.migrations.generator import generate_migration
from schemashift.migrations.migration import Migration
from schemashift.migrations.state import (
    LOCK_POLL_INTERVAL,
    MIGRATION_LOCK_TABLE,
    MIGRATIONS_TABLE,
    STALE_LOCK_SECONDS,
    MigrationRecord,
)

log = get_logger(__name__)

DEFAULT_LOCK_TIMEOUT = 30.0


class MigrationRunner:
    """Core migration runner.

    Migrations are registered in memory (directly or from a directory) and
    diffed against the bookkeeping table. Each migration runs inside its own
    transaction together with the insert or delete of its bookkeeping row,
    so a migration is either fully applied and recorded or not at all.

    Example:
        runner = MigrationRunner(sqlite_connection, migrations_path="migrations")
        runner.load_migrations()
        await runner.migrate()

        status = await runner.status()
        await runner.rollback(steps=1)
    """

    def __init__(
        self,
        connection_or_adapter: Any,
        migrations_path: Path | str | None = None,
        use_lock: bool = True,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        table_prefix: str = "",
    ):
        """Initialize the migration runner.

        Args:
            connection_or_adapter: Either a MigrationDBAdapter instance or a
                raw database connection (wrapped in an appropriate adapter)
            migrations_path: Directory used by load_migrations() and generate()
            use_lock: Hold the advisory lock during state-changing operations
            lock_timeout: Seconds to wait for the advisory lock
            table_prefix: Table prefix for the adapter created from a raw
                connection; ignored when an adapter is passed in
        """
        if isinstance(connection_or_adapter, MigrationDBAdapter):
            self._adapter = connection_or_adapter
        else:
            self._adapter = create_migration_adapter(connection_or_adapter, table_prefix)

        self._migrations: dict[str, Migration] = {}
        self._migrations_path = Path(migrations_path) if migrations_path else None
        self.use_lock = use_lock
        self.lock_timeout = lock_timeout
        self._lock_depth = 0
        self._lock_id: str | None = None

    @property
    def adapter(self) -> MigrationDBAdapter:
        """Get the database adapter."""
        return self._adapter

    @property
    def db_type(self) -> str:
        return self._adapter.db_type

    @property
    def migrations_path(self) -> Path | None:
        return self._migrations_path

    def set_migrations_path(self, path: Path | str) -> None:
        self._migrations_path = Path(path)

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def register(self, migration: Migration) -> None:
        """Add a migration to the registry, keyed by name.

        Registering a second migration with the same name replaces the first.
        """
        if migration.name in self._migrations:
            log.debug(f"Replacing registered migration {migration.name}")
        self._migrations[migration.name] = migration
        # Keep the registry ordered by version; sorted() is stable for ties
        self._migrations = dict(sorted(self._migrations.items(), key=lambda item: item[1].version))

    def register_all(self, migrations: Iterable[Migration]) -> None:
        for migration in migrations:
            self.register(migration)

    @property
    def migrations(self) -> list[Migration]:
        """Registered migrations in version order."""
        return list(self._migrations.values())

    def find_migration(self, name: str) -> Migration | None:
        return self._migrations.get(name)

    def load_migrations(self, path: Path | str | None = None) -> list[Migration]:
        """Discover migrations from a directory and register them.

        Args:
            path: Directory to scan; defaults to the configured migrations path

        Returns:
            The migrations that were registered

        Raises:
            MigrationError: If no path is configured, the directory is
                missing, or a migration module fails to import
        """
        directory = Path(path) if path is not None else self._migrations_path
        if directory is None:
            raise MigrationError.load_failed("<unset>", "migrations path not set")

        migrations = load_migrations_from_path(directory)
        self.register_all(migrations)
        log.info(f"Loaded {len(migrations)} migration(s) from {directory}")
        return migrations

    # -------------------------------------------------------------------------
    # Bookkeeping table management
    # -------------------------------------------------------------------------

    def _table(self) -> str:
        return self._adapter.full_table_name(MIGRATIONS_TABLE)

    async def has_migrations_table(self) -> bool:
        return await self._adapter.table_exists(MIGRATIONS_TABLE)

    async def create_migrations_table(self) -> None:
        """Create the bookkeeping table if it does not exist."""
        if await self.has_migrations_table():
            return

        if self._adapter.db_type == "sqlite":
            id_column = "id INTEGER PRIMARY KEY AUTOINCREMENT"
        else:
            id_column = "id SERIAL PRIMARY KEY"

        await self._adapter.create_table(
            MIGRATIONS_TABLE,
            f"""
                {id_column},
                migration VARCHAR(255) NOT NULL UNIQUE,
                batch INTEGER NOT NULL CHECK (batch > 0),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            """,
        )
        await self._adapter.commit()
        log.debug(f"Created bookkeeping table {self._table()}")

    async def _ensure_migrations_table(self) -> None:
        if not await self.has_migrations_table():
            await self.create_migrations_table()

    async def _get_records(self, min_batch: int | None = None) -> list[MigrationRecord]:
        """Bookkeeping rows, most recently applied first."""
        if not await self.has_migrations_table():
            return []

        query = self._adapter.query().table(MIGRATIONS_TABLE)
        if min_batch is not None:
            query = query.where("batch", ">=", min_batch)
        rows = await query.order_by("batch", "DESC").order_by("id", "DESC").get()
        return [MigrationRecord.from_row(row) for row in rows]

    async def get_next_batch_number(self) -> int:
        if not await self.has_migrations_table():
            return 1
        max_batch = await self._adapter.query().table(MIGRATIONS_TABLE).max("batch")
        return int(max_batch or 0) + 1

    # -------------------------------------------------------------------------
    # Locking mechanism
    # -------------------------------------------------------------------------

    async def _create_lock_table(self) -> None:
        lock_table = self._adapter.full_table_name(MIGRATION_LOCK_TABLE)
        await self._adapter.execute(f"""
            CREATE TABLE IF NOT EXISTS {lock_table} (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                locked_at TEXT,
                locked_by TEXT
            )
        """)
        # Seed the single lock row; concurrent first runs may both get here
        if self._adapter.db_type == "sqlite":
            await self._adapter.execute(f"""
                INSERT OR IGNORE INTO {lock_table} (id, locked_at, locked_by)
                VALUES (1, NULL, NULL)
            """)
        else:
            await self._adapter.execute(f"""
                INSERT INTO {lock_table} (id, locked_at, locked_by)
                VALUES (1, NULL, NULL)
                ON CONFLICT (id) DO NOTHING
            """)
        await self._adapter.commit()

    async def _acquire_lock(self) -> None:
        """Acquire the migration lock.

        Re-entrant within one runner: nested acquisitions only bump a counter.

        Raises:
            LockError: If the lock cannot be acquired within lock_timeout
        """
        if self._lock_depth > 0:
            self._lock_depth += 1
            return

        await self._create_lock_table()
        lock_table = self._adapter.full_table_name(MIGRATION_LOCK_TABLE)
        lock_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        start_time = time.monotonic()

        while True:
            # Try to acquire lock using atomic UPDATE
            await self._adapter.execute(
                f"""
                UPDATE {lock_table}
                SET locked_at = ?, locked_by = ?
                WHERE id = 1 AND locked_at IS NULL
                """,
                (datetime.now(UTC).isoformat(), lock_id),
            )
            acquired = self._adapter.get_rowcount() > 0
            await self._adapter.commit()
            if acquired:
                break

            row = await self._adapter.fetchone(f"SELECT locked_at, locked_by FROM {lock_table} WHERE id = 1")
            if row and row["locked_at"]:
                locked_at = datetime.fromisoformat(row["locked_at"])
                if (datetime.now(UTC) - locked_at).total_seconds() > STALE_LOCK_SECONDS:
                    log.warning(f"Taking over stale migration lock from {row['locked_by']}")
                    await self._adapter.execute(
                        f"""
                        UPDATE {lock_table}
                        SET locked_at = ?, locked_by = ?
                        WHERE id = 1 AND locked_at = ?
                        """,
                        (datetime.now(UTC).isoformat(), lock_id, row["locked_at"]),
                    )
                    acquired = self._adapter.get_rowcount() > 0
                    await self._adapter.commit()
                    if acquired:
                        break

            if time.monotonic() - start_time >= self.lock_timeout:
                holder = row["locked_by"] if row else "unknown"
                raise LockError(
                    f"Could not acquire migration lock within {self.lock_timeout}s "
                    f"(held by {holder}). Another migration may be in progress."
                )
            await asyncio.sleep(LOCK_POLL_INTERVAL)

        self._lock_id = lock_id
        self._lock_depth = 1
        log.debug(f"Migration lock acquired by {lock_id}")

    async def _release_lock(self) -> None:
        """Release the migration lock once the outermost holder is done."""
        if self._lock_depth == 0:
            return
        self._lock_depth -= 1
        if self._lock_depth > 0:
            return

        lock_table = self._adapter.full_table_name(MIGRATION_LOCK_TABLE)
        # A failed statement may leave the connection in an aborted transaction
        await self._adapter.rollback()
        await self._adapter.execute(
            f"""
            UPDATE {lock_table}
            SET locked_at = NULL, locked_by = NULL
            WHERE id = 1 AND locked_by = ?
            """,
            (self._lock_id,),
        )
        await self._adapter.commit()
        log.debug(f"Migration lock released by {self._lock_id}")
        self._lock_id = None

    def _locking(self, pretend: bool) -> bool:
        return self.use_lock and not pretend

    @asynccontextmanager
    async def _holding_lock(self, pretend: bool):
        """Hold the migration lock for the body unless locking is off.

        If the body raises, a failure to release is logged so the
        body's error is the one that propagates.
        """
        if not self._locking(pretend):
            yield
            return

        await self._acquire_lock()
        try:
            yield
        except BaseException:
            try:
                await self._release_lock()
            except DatabaseError as e:
                log.error(f"Failed to release migration lock after error: {e}")
            raise
        await self._release_lock()

    # -------------------------------------------------------------------------
    # Queries over registry vs. bookkeeping table
    # -------------------------------------------------------------------------

    async def get_completed(self) -> list[str]:
        """Names of applied migrations.

        Returns an empty list when the bookkeeping table does not exist yet;
        the table is not created by this call.
        """
        if not await self.has_migrations_table():
            return []
        return await self._adapter.query().table(MIGRATIONS_TABLE).order_by("id").pluck("migration")

    async def get_pending(self) -> list[Migration]:
        """Registered migrations without a bookkeeping row, in version order."""
        completed = set(await self.get_completed())
        return [m for m in self._migrations.values() if m.name not in completed]

    async def has_pending(self) -> bool:
        return len(await self.get_pending()) > 0

    async def has_run(self, name: str) -> bool:
        return name in await self.get_completed()

    async def get_current_version(self) -> str:
        """Version of the most recently applied migration, or "0"."""
        records = await self._get_records()
        if not records:
            return "0"
        migration = self.find_migration(records[0].migration)
        return migration.version if migration is not None else "0"

    def get_latest_version(self) -> str:
        """Version of the last registered migration, or "0"."""
        if not self._migrations:
            return "0"
        return self.migrations[-1].version

    async def preview(self) -> dict[str, dict[str, str]]:
        """Pending migrations mapped to their version and description."""
        return {
            m.name: {"version": m.version, "description": m.description or ""} for m in await self.get_pending()
        }

    async def status(self) -> list[dict[str, Any]]:
        """Report every registered migration joined against the bookkeeping table.

        Returns:
            One dict per registered migration, in version order, with keys
            ``name``, ``batch`` (None if pending), ``ran`` and ``ran_at``.
        """
        records = {record.migration: record for record in await self._get_records()}
        result = []
        for migration in self._migrations.values():
            record = records.get(migration.name)
            ran_at = record.created_at if record is not None else None
            result.append(
                {
                    "name": migration.name,
                    "batch": record.batch if record is not None else None,
                    "ran": record is not None,
                    "ran_at": str(ran_at) if ran_at is not None else None,
                }
            )
        return result

    # -------------------------------------------------------------------------
    # Migration execution
    # -------------------------------------------------------------------------

    async def migrate(self, pretend: bool = False) -> list[str]:
        """Apply all pending migrations as one new batch.

        Args:
            pretend: Report what would run without touching the database

        Returns:
            Names of the migrations applied (or that would be applied)

        Raises:
            MigrationError: If a migration fails. Migrations applied before
                the failing one stay committed.
            LockError: If the lock cannot be acquired
        """
        if pretend:
            pending = await self.get_pending()
            for migration in pending:
                log.info(f"[PRETEND] Would apply migration: {migration.name}")
            return [m.name for m in pending]

        async with self._holding_lock(pretend):
            await self._ensure_migrations_table()
            pending = await self.get_pending()
            if not pending:
                log.info("No pending migrations")
                return []

            batch = await self.get_next_batch_number()
            log.info(f"Found {len(pending)} pending migration(s), batch {batch}")

            ran = []
            for migration in pending:
                await self._apply_migration(migration, batch)
                ran.append(migration.name)
            return ran

    async def run(self, migration: Migration, pretend: bool = False) -> list[str]:
        """Apply a single migration under the next batch number.

        The migration is registered if no migration with its name is
        registered yet. A pretend run leaves the registry untouched.

        Raises:
            MigrationError: If it has already been applied, or if it fails
        """
        if await self.has_run(migration.name):
            raise MigrationError.migration_already_ran(migration.name)

        if pretend:
            log.info(f"[PRETEND] Would apply migration: {migration.name}")
            return [migration.name]

        if migration.name not in self._migrations:
            self.register(migration)

        async with self._holding_lock(pretend):
            await self._ensure_migrations_table()
            if await self.has_run(migration.name):
                raise MigrationError.migration_already_ran(migration.name)
            await self._apply_migration(migration, await self.get_next_batch_number())
            return [migration.name]

    async def _apply_migration(self, migration: Migration, batch: int) -> None:
        """Run up() and record the migration in one transaction.

        Raises:
            MigrationError: If the migration or its bookkeeping insert fails
        """
        log.info(f"Applying migration: {migration.name}")
        start_time = time.time()

        async def apply(db: MigrationDBAdapter) -> None:
            await migration.apply(db)
            await db.query().table(MIGRATIONS_TABLE).insert({"migration": migration.name, "batch": batch})

        try:
            await self._adapter.transaction().run(apply)
        except Exception as e:
            log.error(f"Migration {migration.name} failed: {e}")
            raise MigrationError.migration_failed(migration.name, e) from e

        execution_time_ms = int((time.time() - start_time) * 1000)
        log.info(f"Migration {migration.name} applied in {execution_time_ms}ms")

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def rollback(self, steps: int = 1, pretend: bool = False) -> list[str]:
        """Roll back the migrations of the last ``steps`` batches.

        Migrations are undone most recently applied first, i.e. by
        bookkeeping (batch DESC, id DESC) rather than by version.

        Returns:
            Names of the migrations rolled back (or that would be)

        Raises:
            MigrationError: If an applied migration is no longer registered,
                or its down() fails. Earlier rollbacks stay committed.
            LockError: If the lock cannot be acquired
        """
        if steps < 1:
            raise ValueError(f"steps must be a positive integer, got {steps}")

        async with self._holding_lock(pretend):
            if not pretend:
                await self._ensure_migrations_table()
            max_batch = await self.get_next_batch_number() - 1
            if max_batch < 1:
                log.info("No migrations to rollback")
                return []

            min_batch = max(1, max_batch - steps + 1)
            records = await self._get_records(min_batch=min_batch)

            rolled_back = []
            for record in records:
                migration = self.find_migration(record.migration)
                if migration is None:
                    raise MigrationError.migration_not_found(record.migration)

                if pretend:
                    log.info(f"[PRETEND] Would roll back migration: {migration.name}")
                else:
                    await self._rollback_migration(migration)
                rolled_back.append(migration.name)
            return rolled_back

    async def reset(self, pretend: bool = False) -> list[str]:
        """Roll back every applied migration.

        Applied migrations that are no longer registered are skipped.
        """
        async with self._holding_lock(pretend):
            if not pretend:
                await self._ensure_migrations_table()
            rolled_back = []
            for record in await self._get_records():
                migration = self.find_migration(record.migration)
                if migration is None:
                    log.warning(f"Skipping reset of unregistered migration: {record.migration}")
                    continue

                if pretend:
                    log.info(f"[PRETEND] Would roll back migration: {migration.name}")
                else:
                    await self._rollback_migration(migration)
                rolled_back.append(migration.name)
            return rolled_back

    async def refresh(self, pretend: bool = False) -> list[str]:
        """Reset, then migrate.

        The lock is held across both phases, but the two phases are not
        one transaction.

        Returns:
            Names applied by the migrate phase
        """
        async with self._holding_lock(pretend):
            await self.reset(pretend=pretend)
            if pretend:
                # Nothing was actually reset, so everything registered would run
                return [m.name for m in self._migrations.values()]
            return await self.migrate(pretend=pretend)

    async def _rollback_migration(self, migration: Migration) -> None:
        """Run down() and delete the bookkeeping row in one transaction.

        Raises:
            MigrationError: If down() or the delete fails
        """
        log.info(f"Rolling back migration: {migration.name}")

        async def revert(db: MigrationDBAdapter) -> None:
            await migration.revert(db)
            await db.query().table(MIGRATIONS_TABLE).where("migration", migration.name).delete()

        try:
            await self._adapter.transaction().run(revert)
        except Exception as e:
            log.error(f"Rollback of {migration.name} failed: {e}")
            raise MigrationError.rollback_failed(migration.name, e) from e

        log.info(f"Migration {migration.name} rolled back")

    # -------------------------------------------------------------------------
    # Scaffolding
    # -------------------------------------------------------------------------

    def generate(self, name: str, table: str | None = None, create: bool = True) -> Path:
        """Scaffold a new migration file in the configured migrations path.

        Raises:
            MigrationError: If the path is unset or the file cannot be written
        """
        return generate_migration(self._migrations_path, name, table=table, create=create)
