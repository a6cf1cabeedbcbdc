"""Tests for settings and secrets files."""

import logging

import pytest

from schemashift.config.logging_config import get_logger
from schemashift.config.settings import get_system_file_path, get_value, load_settings, save_settings


@pytest.fixture
def config_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


def test_system_file_path(config_home):
    assert get_system_file_path("settings.yaml") == config_home / ".config" / "schemashift" / "settings.yaml"


def test_save_and_load_round_trip(config_home):
    assert load_settings() == ({}, {})

    save_settings({"MIGRATIONS_PATH": "db/migrations"}, {"POSTGRES_URL": "postgresql://u:p@h/db"})

    settings, secrets = load_settings()
    assert settings == {"MIGRATIONS_PATH": "db/migrations"}
    assert secrets == {"POSTGRES_URL": "postgresql://u:p@h/db"}


def test_get_value_precedence(monkeypatch):
    monkeypatch.setenv("SOME_KEY", "from_env")

    assert get_value("SOME_KEY", {"SOME_KEY": "setting"}, {"SOME_KEY": "secret"}, {}) == "secret"
    assert get_value("SOME_KEY", {"SOME_KEY": "setting"}, {}, {}) == "setting"
    assert get_value("SOME_KEY", {"SOME_KEY": ""}, {}, {}) == "from_env"
    assert get_value("OTHER_KEY", {}, {}, {"OTHER_KEY": "default_env"}) == "default_env"
    assert get_value("OTHER_KEY", {}, {}, {}, default=None) is None


def test_get_value_missing(monkeypatch):
    monkeypatch.delenv("MISSING_KEY", raising=False)
    with pytest.raises(KeyError):
        get_value("MISSING_KEY", {}, {}, {})


def test_get_logger_is_module_scoped():
    logger = get_logger("schemashift.tests")
    assert isinstance(logger, logging.Logger)
    assert logger.name == "schemashift.tests"
    assert logger.level != logging.NOTSET
