"""
The migration contract.

A Migration is a single named, versioned, reversible schema change. Its name
is the join key between code and the bookkeeping table, so it must stay
stable once the migration has been applied.
"""

import inspect
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from schemashift.migrations.exceptions import MigrationError

if TYPE_CHECKING:
    from schemashift.migrations.db_adapter import MigrationDBAdapter

# Matches 2024_01_15_120000 as well as 20240115_120000
VERSION_PATTERN = re.compile(r"(\d{4})_?(\d{2})_?(\d{2})_(\d{6})")

MigrationCallable = Callable[["MigrationDBAdapter"], Awaitable[None] | None]


def parse_version(name: str) -> str | None:
    """Extract the timestamp version token from a migration name.

    Both ``YYYY_MM_DD_HHMMSS`` and ``YYYYMMDD_HHMMSS`` are accepted; the
    result is always normalized to ``YYYY_MM_DD_HHMMSS`` so mixed naming
    styles still sort correctly.

    Returns:
        The normalized version, or None if the name carries no timestamp.
    """
    match = VERSION_PATTERN.search(name)
    if match is None:
        return None
    year, month, day, time_part = match.groups()
    return f"{year}_{month}_{day}_{time_part}"


def humanize(name: str) -> str:
    """Turn a migration name into a readable description.

    ``2024_01_15_120000_create_users_table`` becomes ``Create users table``.
    """
    match = VERSION_PATTERN.search(name)
    if match is not None and match.start() == 0:
        name = name[match.end() :]
    words = re.sub(r"[_\-\s]+", " ", name).strip()
    if not words:
        return name
    return words[0].upper() + words[1:]


@dataclass
class Migration:
    """Represents a database migration.

    Attributes:
        name: Unique, stable identifier (convention: <timestamp>_<description>)
        up: Function applying the migration; may be async
        down: Function reverting the structural effect of ``up``; may be async
        version: Sortable version token. Derived from ``name`` when omitted.
        description: Human-readable summary. Derived from ``name`` when omitted.
        file_path: Source file, for migrations loaded from a directory
    """

    name: str
    up: MigrationCallable
    down: MigrationCallable
    version: str | None = None
    description: str | None = None
    file_path: Path | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise MigrationError.invalid_migration(str(self.name), "name must be a non-empty string")
        if not callable(self.up):
            raise MigrationError.invalid_migration(self.name, "'up' is not callable")
        if not callable(self.down):
            raise MigrationError.invalid_migration(self.name, "'down' is not callable")

        if self.version is None:
            self.version = parse_version(self.name)
            if self.version is None:
                raise MigrationError.invalid_migration(
                    self.name,
                    "no version given and none could be derived from the name "
                    "(expected a YYYY_MM_DD_HHMMSS prefix)",
                )
        else:
            # Timestamp versions share the derived form; anything else is kept as given
            raw = str(self.version)
            self.version = parse_version(raw) if VERSION_PATTERN.fullmatch(raw) else raw

        if not self.description:
            self.description = humanize(self.name)

    async def apply(self, db: "MigrationDBAdapter") -> None:
        """Run ``up`` against the given schema port."""
        await _maybe_await(self.up(db))

    async def revert(self, db: "MigrationDBAdapter") -> None:
        """Run ``down`` against the given schema port."""
        await _maybe_await(self.down(db))

    def __repr__(self) -> str:
        return f"Migration({self.name!r}, version={self.version!r})"


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result
