"""
Scaffolding for new migration files.
"""

import re
from datetime import UTC, datetime
from pathlib import Path

from schemashift.config.logging_config import get_logger
from schemashift.migrations.exceptions import MigrationError
from schemashift.migrations.migration import humanize
from schemashift.migrations.query import IDENTIFIER_PATTERN

log = get_logger(__name__)

VERSION_FORMAT = "%Y_%m_%d_%H%M%S"
SAFE_NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")

MIGRATION_TEMPLATE = '''"""
Migration: {title}
Version: {version}
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from schemashift.migrations.db_adapter import MigrationDBAdapter

name = "{name}"
version = "{version}"
description = "{title}"


async def up(db: "MigrationDBAdapter") -> None:
    """Apply the migration."""
    {up_body}


async def down(db: "MigrationDBAdapter") -> None:
    """Revert the structural effect of up()."""
    {down_body}
'''


def sanitize_name(name: str) -> str:
    """Lowercase a migration name and replace spaces and dashes with underscores."""
    return re.sub(r"[\s\-]+", "_", name.strip().lower())


def render_migration(name: str, version: str, table: str | None = None, create: bool = True) -> str:
    """Render the source of a migration module.

    With a table and ``create`` the body creates and drops that table;
    otherwise ``up`` and ``down`` are left as stubs to fill in.
    """
    if table and create:
        up_body = f'await db.create_table("{table}", "id INTEGER PRIMARY KEY")'
        down_body = f'await db.drop_table("{table}")'
    elif table:
        up_body = f"# Alter table {table} here, e.g. await db.add_column(\"{table}\", \"column\", \"TEXT\")\n    pass"
        down_body = f"# Revert the changes to table {table} here\n    pass"
    else:
        up_body = "# Add migration logic here\n    pass"
        down_body = "# Revert migration logic here\n    pass"

    return MIGRATION_TEMPLATE.format(
        name=name,
        version=version,
        title=humanize(name),
        up_body=up_body,
        down_body=down_body,
    )


def generate_migration(
    directory: Path | None,
    name: str,
    table: str | None = None,
    create: bool = True,
    now: datetime | None = None,
) -> Path:
    """Write a new ``<YYYY_MM_DD_HHMMSS>_<name>.py`` file into ``directory``.

    Args:
        directory: Migrations directory; created if missing
        name: Descriptive part of the migration name
        table: Optional table the migration is about
        create: Scaffold create/drop of ``table`` rather than stubs
        now: Timestamp to use instead of the current UTC time

    Returns:
        Path of the written file

    Raises:
        MigrationError: If the directory is unset, the name or table is not
            a valid identifier, the file already exists, or writing fails.
    """
    if directory is None:
        raise MigrationError.generate_failed(name, "migrations path not set")

    safe_name = sanitize_name(name)
    if not safe_name or not SAFE_NAME_PATTERN.match(safe_name):
        raise MigrationError.generate_failed(name, "name may only contain letters, digits, spaces, dashes and underscores")
    if table is not None and not IDENTIFIER_PATTERN.match(table):
        raise MigrationError.generate_failed(name, f"invalid table name {table!r}")

    version = (now or datetime.now(UTC)).strftime(VERSION_FORMAT)
    full_name = f"{version}_{safe_name}"
    file_path = Path(directory) / f"{full_name}.py"

    if file_path.exists():
        raise MigrationError.generate_failed(full_name, f"file already exists: {file_path}")

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(render_migration(full_name, version, table, create))
    except OSError as e:
        raise MigrationError.generate_failed(full_name, str(e)) from e

    log.info(f"Created migration file {file_path}")
    return file_path
