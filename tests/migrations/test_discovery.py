"""Tests for loading migrations from a directory."""

import pytest

from schemashift.migrations.discovery import load_migration_file, load_migrations_from_path
from schemashift.migrations.exceptions import MigrationError

MODULE = '''
async def up(db):
    pass


async def down(db):
    pass
'''


def test_sorted_by_version(tmp_path):
    (tmp_path / "2024_03_01_000000_third.py").write_text(MODULE)
    (tmp_path / "20240101_000000_first.py").write_text(MODULE)
    (tmp_path / "2024_02_01_000000_second.py").write_text(MODULE)

    migrations = load_migrations_from_path(tmp_path)

    assert [m.name for m in migrations] == [
        "20240101_000000_first",
        "2024_02_01_000000_second",
        "2024_03_01_000000_third",
    ]
    assert migrations[0].version == "2024_01_01_000000"
    assert migrations[0].file_path == tmp_path / "20240101_000000_first.py"


def test_module_attributes_override_defaults(tmp_path):
    (tmp_path / "custom.py").write_text(
        'name = "2024_05_05_050505_renamed"\nversion = "2024_05_05_050505"\ndescription = "Renamed"\n' + MODULE
    )

    (migration,) = load_migrations_from_path(tmp_path)

    assert migration.name == "2024_05_05_050505_renamed"
    assert migration.description == "Renamed"


def test_non_migrations_skipped(tmp_path):
    (tmp_path / "__init__.py").write_text("raise RuntimeError('never imported')")
    (tmp_path / "helpers.py").write_text("VALUE = 1\n")
    (tmp_path / "no_version.py").write_text(MODULE)
    (tmp_path / "2024_01_01_000000_ok.py").write_text(MODULE)
    (tmp_path / "notes.txt").write_text("not python")

    migrations = load_migrations_from_path(tmp_path)

    assert [m.name for m in migrations] == ["2024_01_01_000000_ok"]


def test_import_error_raises(tmp_path):
    (tmp_path / "2024_01_01_000000_broken.py").write_text("import not_a_real_module_anywhere\n")

    with pytest.raises(MigrationError) as exc_info:
        load_migrations_from_path(tmp_path)

    assert "ModuleNotFoundError" in str(exc_info.value)
    assert exc_info.value.__cause__ is not None


def test_missing_directory(tmp_path):
    with pytest.raises(MigrationError) as exc_info:
        load_migrations_from_path(tmp_path / "nope")
    assert "directory does not exist" in str(exc_info.value)


def test_load_single_file(tmp_path):
    path = tmp_path / "2024_01_01_000000_single.py"
    path.write_text(MODULE)

    migration = load_migration_file(path)

    assert migration is not None
    assert migration.description == "Single"
