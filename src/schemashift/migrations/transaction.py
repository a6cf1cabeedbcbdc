"""
Transaction management for migration adapters.

The TransactionManager tracks the nesting depth of one adapter's transaction.
The outermost begin opens a real transaction; nested begins are mapped onto
savepoints so an inner failure can be undone without abandoning the outer
unit of work.
"""

import asyncio
import inspect
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from schemashift.config.logging_config import get_logger
from schemashift.migrations.exceptions import (
    DatabaseError,
    QueryError,
    TransactionError,
    is_retryable_error,
)
from schemashift.migrations.query import validate_identifier

if TYPE_CHECKING:
    from schemashift.migrations.db_adapter import MigrationDBAdapter

log = get_logger(__name__)

T = TypeVar("T")

ISOLATION_LEVELS = ("READ UNCOMMITTED", "READ COMMITTED", "REPEATABLE READ", "SERIALIZABLE")

# SQLite only distinguishes dirty reads, through a pragma
SQLITE_ISOLATION_PRAGMAS = {
    "READ UNCOMMITTED": "PRAGMA read_uncommitted = 1",
    "SERIALIZABLE": "PRAGMA read_uncommitted = 0",
}

Hook = Callable[[], Awaitable[None] | None]


class TransactionManager:
    """Nesting-aware transaction manager bound to a single adapter.

    Example:
        result = await db.transaction().run(callback)

        async with db.transaction():
            await db.execute("INSERT ...")
    """

    def __init__(self, adapter: "MigrationDBAdapter"):
        self._adapter = adapter
        self._level = 0
        self._level_savepoints: dict[int, str] = {}
        self._savepoints: set[str] = set()
        self._after_commit: list[Hook] = []
        self._after_rollback: list[Hook] = []
        self._isolation_level: str | None = None

    @property
    def level(self) -> int:
        """Current nesting depth (0 when no transaction is open)."""
        return self._level

    @property
    def is_active(self) -> bool:
        return self._level > 0

    async def begin(self) -> None:
        """Open a transaction, or a savepoint when one is already open."""
        if self._level == 0:
            try:
                await self._adapter.begin()
            except DatabaseError as e:
                raise TransactionError.begin_failed(str(e), self._level) from e
            self._level = 1
            return

        if not self._adapter.supports_savepoints:
            raise TransactionError.nested_not_supported(self._level)

        name = f"schemashift_sp_{self._level}"
        await self._execute_savepoint(f"SAVEPOINT {name}", name, "create")
        self._level_savepoints[self._level] = name
        self._level += 1

    async def commit(self) -> None:
        """Commit the innermost transaction level."""
        if self._level == 0:
            raise TransactionError.no_active_transaction("commit")

        if self._level == 1:
            try:
                await self._adapter.commit()
            except QueryError as e:
                if e.is_deadlock():
                    raise TransactionError.deadlock_detected(self._level) from e
                if e.is_lock_timeout():
                    raise TransactionError.lock_timeout(self._level) from e
                raise TransactionError.commit_failed(str(e), self._level) from e
            except DatabaseError as e:
                raise TransactionError.commit_failed(str(e), self._level) from e
            hooks = self._after_commit
            self._reset()
            await self._run_hooks(hooks, "commit")
            return

        name = self._level_savepoints.pop(self._level - 1, None)
        if name is not None:
            await self._execute_savepoint(f"RELEASE SAVEPOINT {name}", name, "release")
        self._level -= 1

    async def rollback(self) -> None:
        """Roll back the innermost transaction level.

        Rolling back with no active transaction is a no-op.
        """
        if self._level == 0:
            return

        if self._level == 1:
            hooks = self._after_rollback
            try:
                await self._adapter.rollback()
            except DatabaseError as e:
                raise TransactionError.rollback_failed(str(e), self._level) from e
            finally:
                self._reset()
            await self._run_hooks(hooks, "rollback")
            return

        name = self._level_savepoints.pop(self._level - 1, None)
        self._level -= 1
        if name is not None:
            await self._execute_savepoint(f"ROLLBACK TO SAVEPOINT {name}", name, "rollback")

    async def savepoint(self, name: str) -> None:
        """Create a named savepoint inside the active transaction."""
        if self._level == 0:
            raise TransactionError.no_active_transaction("create savepoint")
        validate_identifier(name)
        await self._execute_savepoint(f"SAVEPOINT {name}", name, "create")
        self._savepoints.add(name)

    async def rollback_to(self, name: str) -> None:
        """Roll back to a savepoint previously created with savepoint()."""
        if self._level == 0:
            raise TransactionError.no_active_transaction("rollback to savepoint")
        if name not in self._savepoints:
            raise TransactionError.savepoint_not_found(name, self._level)
        await self._execute_savepoint(f"ROLLBACK TO SAVEPOINT {name}", name, "rollback")

    async def release_savepoint(self, name: str) -> None:
        """Release a savepoint previously created with savepoint()."""
        if self._level == 0:
            raise TransactionError.no_active_transaction("release savepoint")
        if name not in self._savepoints:
            raise TransactionError.savepoint_not_found(name, self._level)
        await self._execute_savepoint(f"RELEASE SAVEPOINT {name}", name, "release")
        self._savepoints.discard(name)

    def after_commit(self, callback: Hook) -> None:
        """Call ``callback`` once the outermost transaction commits.

        Callbacks may be sync or async. They are discarded if the
        transaction rolls back instead, and a failing callback is logged
        without affecting the others.
        """
        self._after_commit.append(callback)

    def after_rollback(self, callback: Hook) -> None:
        """Call ``callback`` once the outermost transaction rolls back."""
        self._after_rollback.append(callback)

    @property
    def isolation_level(self) -> str | None:
        """Isolation level set with set_isolation_level(), or None for the driver default."""
        return self._isolation_level

    async def set_isolation_level(self, isolation: str) -> None:
        """Set the isolation level for transactions started after this call.

        Raises:
            ValueError: If ``isolation`` is not a standard SQL isolation level
            TransactionError: If a transaction is active, or the database
                cannot provide the level
        """
        isolation = " ".join(isolation.upper().replace("_", " ").split())
        if isolation not in ISOLATION_LEVELS:
            raise ValueError(f"Unknown isolation level: {isolation}")
        if self._level > 0:
            raise TransactionError.isolation_change_active(self._level)

        db_type = self._adapter.db_type
        if db_type == "sqlite":
            sql = SQLITE_ISOLATION_PRAGMAS.get(isolation)
            if sql is None:
                raise TransactionError.isolation_not_supported(isolation, db_type)
        else:
            sql = f"SET SESSION CHARACTERISTICS AS TRANSACTION ISOLATION LEVEL {isolation}"

        try:
            await self._adapter.execute(sql)
            if db_type != "sqlite":
                # SET is transactional in PostgreSQL
                await self._adapter.commit()
        except DatabaseError as e:
            raise TransactionError.isolation_failed(str(e)) from e
        self._isolation_level = isolation
        log.debug(f"Transaction isolation level set to {isolation}")

    async def run(self, callback: Callable[["MigrationDBAdapter"], Awaitable[T]]) -> T:
        """Run ``callback`` inside a transaction.

        Commits when the callback returns normally. On any error the
        transaction is rolled back and the original error is re-raised.
        """
        await self.begin()
        try:
            result = await callback(self._adapter)
        except BaseException:
            await self.rollback()
            raise
        await self.commit()
        return result

    async def run_with_retry(
        self,
        callback: Callable[["MigrationDBAdapter"], Awaitable[T]],
        max_attempts: int = 3,
        retry_delay_ms: int = 100,
    ) -> T:
        """Run ``callback`` in a transaction, retrying deadlocks and lock timeouts.

        The delay doubles after every failed attempt. Non-retryable errors
        and the final failed attempt are re-raised unchanged.
        """
        attempt = 0
        delay_ms = retry_delay_ms
        while True:
            attempt += 1
            try:
                return await self.run(callback)
            except DatabaseError as e:
                if attempt >= max_attempts or not is_retryable_error(e):
                    raise
                log.warning(f"Retryable failure on attempt {attempt}/{max_attempts}, retrying in {delay_ms}ms: {e}")
                await asyncio.sleep(delay_ms / 1000)
                delay_ms *= 2

    async def __aenter__(self) -> "TransactionManager":
        await self.begin()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()

    def _reset(self) -> None:
        self._level = 0
        self._level_savepoints.clear()
        self._savepoints.clear()
        self._after_commit = []
        self._after_rollback = []

    async def _run_hooks(self, hooks: list[Hook], event: str) -> None:
        # The transaction is already finished, so a failing hook cannot undo it
        for hook in hooks:
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error(f"After-{event} callback {hook!r} failed: {e}")

    async def _execute_savepoint(self, sql: str, name: str, operation: str) -> None:
        try:
            await self._adapter.execute(sql)
        except DatabaseError as e:
            raise TransactionError.savepoint_failed(name, operation, self._level) from e
