"""
Tests for the TransactionManager.

Covers nesting via savepoints, named savepoints, run() and retry behaviour.
"""

import pytest
import pytest_asyncio

from schemashift.migrations.exceptions import QueryError, TransactionError


async def count_rows(adapter) -> int:
    return await adapter.query().table("items").count()


@pytest_asyncio.fixture
async def items_adapter(adapter):
    await adapter.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)")
    await adapter.commit()
    return adapter


class TestNesting:
    @pytest.mark.asyncio
    async def test_commit_persists(self, items_adapter):
        tx = items_adapter.transaction()
        await tx.begin()
        assert tx.is_active
        await items_adapter.execute("INSERT INTO items (name) VALUES ('a')")
        await tx.commit()

        assert tx.level == 0
        assert await count_rows(items_adapter) == 1

    @pytest.mark.asyncio
    async def test_rollback_discards(self, items_adapter):
        tx = items_adapter.transaction()
        await tx.begin()
        await items_adapter.execute("INSERT INTO items (name) VALUES ('a')")
        await tx.rollback()

        assert not tx.is_active
        assert await count_rows(items_adapter) == 0

    @pytest.mark.asyncio
    async def test_inner_rollback_keeps_outer_work(self, items_adapter):
        tx = items_adapter.transaction()
        await tx.begin()
        await items_adapter.execute("INSERT INTO items (name) VALUES ('outer')")
        await tx.begin()
        assert tx.level == 2
        await items_adapter.execute("INSERT INTO items (name) VALUES ('inner')")
        await tx.rollback()
        assert tx.level == 1
        await tx.commit()

        assert await items_adapter.query().table("items").pluck("name") == ["outer"]

    @pytest.mark.asyncio
    async def test_inner_commit_then_outer_rollback(self, items_adapter):
        tx = items_adapter.transaction()
        await tx.begin()
        await tx.begin()
        await items_adapter.execute("INSERT INTO items (name) VALUES ('inner')")
        await tx.commit()
        await tx.rollback()

        assert await count_rows(items_adapter) == 0

    @pytest.mark.asyncio
    async def test_nested_without_savepoint_support(self, items_adapter, monkeypatch):
        monkeypatch.setattr(items_adapter, "supports_savepoints", False)
        tx = items_adapter.transaction()
        await tx.begin()

        with pytest.raises(TransactionError) as exc_info:
            await tx.begin()
        assert "not supported" in str(exc_info.value)
        await tx.rollback()

    @pytest.mark.asyncio
    async def test_commit_without_transaction(self, items_adapter):
        tx = items_adapter.transaction()
        with pytest.raises(TransactionError):
            await tx.commit()
        # Rolling back nothing is allowed
        await tx.rollback()

    @pytest.mark.asyncio
    async def test_transaction_is_shared_per_adapter(self, items_adapter):
        assert items_adapter.transaction() is items_adapter.transaction()


class TestNamedSavepoints:
    @pytest.mark.asyncio
    async def test_rollback_to_savepoint(self, items_adapter):
        tx = items_adapter.transaction()
        await tx.begin()
        await items_adapter.execute("INSERT INTO items (name) VALUES ('kept')")
        await tx.savepoint("before_second")
        await items_adapter.execute("INSERT INTO items (name) VALUES ('dropped')")
        await tx.rollback_to("before_second")
        await tx.release_savepoint("before_second")
        await tx.commit()

        assert await items_adapter.query().table("items").pluck("name") == ["kept"]

    @pytest.mark.asyncio
    async def test_unknown_savepoint(self, items_adapter):
        tx = items_adapter.transaction()
        await tx.begin()
        with pytest.raises(TransactionError) as exc_info:
            await tx.rollback_to("missing")
        assert exc_info.value.savepoint_name == "missing"
        with pytest.raises(TransactionError):
            await tx.release_savepoint("missing")
        await tx.rollback()

    @pytest.mark.asyncio
    async def test_savepoint_requires_transaction(self, items_adapter):
        with pytest.raises(TransactionError):
            await items_adapter.transaction().savepoint("sp")


class TestRun:
    @pytest.mark.asyncio
    async def test_run_commits_and_returns(self, items_adapter):
        async def work(db):
            await db.query().table("items").insert({"name": "a"})
            return "done"

        assert await items_adapter.transaction().run(work) == "done"
        assert await count_rows(items_adapter) == 1

    @pytest.mark.asyncio
    async def test_run_rolls_back_and_reraises(self, items_adapter):
        async def work(db):
            await db.query().table("items").insert({"name": "a"})
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await items_adapter.transaction().run(work)

        assert await count_rows(items_adapter) == 0
        assert not items_adapter.transaction().is_active

    @pytest.mark.asyncio
    async def test_ddl_is_rolled_back(self, adapter):
        async def work(db):
            await db.create_table("scratch", "id INTEGER PRIMARY KEY")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await adapter.transaction().run(work)

        assert not await adapter.table_exists("scratch")

    @pytest.mark.asyncio
    async def test_context_manager(self, items_adapter):
        async with items_adapter.transaction():
            await items_adapter.query().table("items").insert({"name": "a"})

        with pytest.raises(RuntimeError):
            async with items_adapter.transaction():
                await items_adapter.query().table("items").insert({"name": "b"})
                raise RuntimeError("boom")

        assert await items_adapter.query().table("items").pluck("name") == ["a"]


class TestRunWithRetry:
    @pytest.mark.asyncio
    async def test_retries_deadlock_then_succeeds(self, items_adapter):
        attempts = []

        async def work(db):
            attempts.append(1)
            if len(attempts) < 3:
                raise QueryError.deadlock()
            return len(attempts)

        result = await items_adapter.transaction().run_with_retry(work, max_attempts=3, retry_delay_ms=1)

        assert result == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, items_adapter):
        attempts = []

        async def work(db):
            attempts.append(1)
            raise QueryError.lock_timeout()

        with pytest.raises(QueryError):
            await items_adapter.transaction().run_with_retry(work, max_attempts=2, retry_delay_ms=1)
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_does_not_retry_fatal_errors(self, items_adapter):
        attempts = []

        async def work(db):
            attempts.append(1)
            raise QueryError.duplicate_key("x")

        with pytest.raises(QueryError):
            await items_adapter.transaction().run_with_retry(work, max_attempts=5, retry_delay_ms=1)
        assert len(attempts) == 1


class TestHooks:
    @pytest.mark.asyncio
    async def test_after_commit_runs_once_outermost_commits(self, items_adapter):
        calls = []

        async def notify():
            calls.append("async")

        tx = items_adapter.transaction()
        await tx.begin()
        tx.after_commit(lambda: calls.append("sync"))
        await tx.begin()
        tx.after_commit(notify)
        tx.after_rollback(lambda: calls.append("rollback"))
        await tx.commit()
        assert calls == []

        await tx.commit()
        assert calls == ["sync", "async"]

        # Hooks do not carry over to the next transaction
        await tx.run(lambda db: count_rows(db))
        assert calls == ["sync", "async"]

    @pytest.mark.asyncio
    async def test_after_rollback_runs_and_commit_hooks_dropped(self, items_adapter):
        calls = []

        async def work(db):
            db.transaction().after_commit(lambda: calls.append("commit"))
            db.transaction().after_rollback(lambda: calls.append("rollback"))
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await items_adapter.transaction().run(work)

        assert calls == ["rollback"]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_stop_others(self, items_adapter):
        calls = []

        def broken():
            raise RuntimeError("hook failed")

        tx = items_adapter.transaction()
        await tx.begin()
        await items_adapter.execute("INSERT INTO items (name) VALUES ('a')")
        tx.after_commit(broken)
        tx.after_commit(lambda: calls.append("after"))
        await tx.commit()

        assert calls == ["after"]
        assert await count_rows(items_adapter) == 1


class TestIsolationLevel:
    @pytest.mark.asyncio
    async def test_default_is_driver_default(self, items_adapter):
        assert items_adapter.transaction().isolation_level is None

    @pytest.mark.asyncio
    async def test_set_supported_level(self, items_adapter):
        tx = items_adapter.transaction()
        await tx.set_isolation_level("read_uncommitted")
        assert tx.isolation_level == "READ UNCOMMITTED"

        await tx.set_isolation_level("serializable")
        assert tx.isolation_level == "SERIALIZABLE"

    @pytest.mark.asyncio
    async def test_sqlite_rejects_unsupported_level(self, items_adapter):
        tx = items_adapter.transaction()
        with pytest.raises(TransactionError, match="not supported"):
            await tx.set_isolation_level("READ COMMITTED")
        assert tx.isolation_level is None

    @pytest.mark.asyncio
    async def test_unknown_level(self, items_adapter):
        with pytest.raises(ValueError):
            await items_adapter.transaction().set_isolation_level("SNAPSHOT")

    @pytest.mark.asyncio
    async def test_cannot_change_during_transaction(self, items_adapter):
        tx = items_adapter.transaction()
        await tx.begin()
        with pytest.raises(TransactionError, match="active transaction"):
            await tx.set_isolation_level("SERIALIZABLE")
        await tx.rollback()
