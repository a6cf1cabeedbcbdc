from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from schemashift.migrations.db_adapter import SQLiteMigrationAdapter
from schemashift.migrations.migration import Migration


@pytest.fixture(scope="session", autouse=True)
def _silence_aiosqlite_logging():
    """Reduce noisy aiosqlite logs during tests."""
    import logging

    for name in (
        "aiosqlite",
        "aiosqlite.core",
        "aiosqlite.cursor",
        "aiosqlite.connection",
    ):
        logger = logging.getLogger(name)
        logger.setLevel(logging.ERROR)
        logger.propagate = False


@pytest_asyncio.fixture
async def test_db():
    """Create a temporary in-memory SQLite database for testing."""
    conn = await aiosqlite.connect(":memory:")
    try:
        yield conn
    finally:
        await conn.close()


@pytest_asyncio.fixture
async def adapter(test_db):
    return SQLiteMigrationAdapter(test_db)


def _make_table_migration(name: str, table: str, calls: list[str] | None = None) -> Migration:
    """A migration creating ``table`` in up() and dropping it in down().

    When ``calls`` is given, "up:<name>" / "down:<name>" are appended to it.
    """

    async def up(db):
        if calls is not None:
            calls.append(f"up:{name}")
        await db.execute(f"CREATE TABLE {db.full_table_name(table)} (id INTEGER PRIMARY KEY, label TEXT)")

    async def down(db):
        if calls is not None:
            calls.append(f"down:{name}")
        await db.execute(f"DROP TABLE {db.full_table_name(table)}")

    return Migration(name=name, up=up, down=down)


@pytest.fixture
def make_table_migration():
    return _make_table_migration


@pytest.fixture
def table_migrations():
    """Three table-creating migrations A < B < C by version."""
    return [
        _make_table_migration("2024_01_01_000001_create_authors", "authors"),
        _make_table_migration("2024_01_01_000002_create_books", "books"),
        _make_table_migration("2024_01_01_000003_create_reviews", "reviews"),
    ]


@pytest.fixture
def migrations_dir(tmp_path) -> Path:
    """Create a temporary migrations directory with two migration files."""
    directory = tmp_path / "migrations"
    directory.mkdir()

    (directory / "2025_01_01_000000_create_test_table.py").write_text('''"""
Migration: Create test table
"""


async def up(db):
    await db.create_table("test_table", "id TEXT PRIMARY KEY, name TEXT, value INTEGER")


async def down(db):
    await db.drop_table("test_table")
''')

    (directory / "2025_01_01_000001_add_description.py").write_text('''"""
Migration: Add description column
"""

description = "Add description to test_table"


async def up(db):
    await db.add_column("test_table", "description", "TEXT")


async def down(db):
    await db.drop_column("test_table", "description")
''')

    return directory


async def _table_names(conn) -> set[str]:
    cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
    return {row[0] for row in await cursor.fetchall()}


@pytest.fixture
def table_names():
    """Coroutine function listing the tables of an aiosqlite connection."""
    return _table_names
