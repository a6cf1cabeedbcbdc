"""
Migration discovery.

Loads migrations from a directory holding one Python module per migration.
A module qualifies when it exposes callable ``up`` and ``down`` functions;
``name``, ``version`` and ``description`` attributes are optional and fall
back to the file stem, the version embedded in the name and the humanized
name respectively.
"""

import importlib.util
from pathlib import Path
from types import ModuleType

from schemashift.config.logging_config import get_logger
from schemashift.migrations.exceptions import MigrationError
from schemashift.migrations.migration import Migration

log = get_logger(__name__)


def migration_from_module(module: ModuleType, file_path: Path | None = None) -> Migration | None:
    """Build a Migration from a loaded module.

    Returns:
        The migration, or None when the module does not satisfy the
        contract (missing or non-callable ``up``/``down``, no usable version).
    """
    up = getattr(module, "up", None)
    down = getattr(module, "down", None)
    default_name = file_path.stem if file_path is not None else module.__name__
    if not callable(up) or not callable(down):
        log.warning(f"Skipping {file_path or module.__name__}: no callable up()/down()")
        return None

    try:
        return Migration(
            name=getattr(module, "name", None) or default_name,
            up=up,
            down=down,
            version=getattr(module, "version", None),
            description=getattr(module, "description", None),
            file_path=file_path,
        )
    except MigrationError as e:
        log.warning(f"Skipping {file_path or module.__name__}: {e}")
        return None


def load_migration_file(file_path: Path) -> Migration | None:
    """Import a single migration file.

    Raises:
        MigrationError: If the file cannot be imported.
    """
    try:
        spec = importlib.util.spec_from_file_location(f"schemashift_migration_{file_path.stem}", file_path)
        if spec is None or spec.loader is None:
            raise MigrationError.load_failed(str(file_path), "not an importable Python file")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
    except MigrationError:
        raise
    except Exception as e:
        raise MigrationError.load_failed(str(file_path), f"{type(e).__name__}: {e}") from e

    return migration_from_module(module, file_path)


def load_migrations_from_path(path: Path | str) -> list[Migration]:
    """Discover all migrations in a directory, sorted by version.

    Files whose name starts with ``__`` are ignored. Modules that do not
    satisfy the migration contract are skipped with a warning.

    Raises:
        MigrationError: If the directory does not exist or a module fails
            to import.
    """
    directory = Path(path)
    if not directory.is_dir():
        raise MigrationError.load_failed(str(directory), "directory does not exist")

    migrations = []
    for file_path in sorted(directory.glob("*.py")):
        if file_path.name.startswith("__"):
            continue

        migration = load_migration_file(file_path)
        if migration is not None:
            migrations.append(migration)

    migrations.sort(key=lambda m: (m.version, m.name))
    log.debug(f"Discovered {len(migrations)} migrations in {directory}")
    return migrations
