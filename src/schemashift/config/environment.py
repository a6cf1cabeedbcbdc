"""
Environment configuration for schemashift.

Configuration is read, in order of precedence, from:

- secrets.yaml and settings.yaml under ~/.config/schemashift/
- process environment variables (including those loaded from .env files)
- the defaults in DEFAULT_ENV

The Environment class exposes typed class-method getters for every value the
CLI and the migration runner consume.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from schemashift.config.settings import (
    SETTINGS_FILE,
    get_system_file_path,
    get_value,
    load_settings,
)

DEFAULT_ENV = {
    "ENV": "development",
    "DB_PATH": str(get_system_file_path("schemashift.sqlite3")),
    "POSTGRES_URL": None,
    "MIGRATIONS_PATH": "migrations",
    "TABLE_PREFIX": "",
    "LOCK_TIMEOUT": "30",
    "LOG_LEVEL": "INFO",
    "DEBUG": None,
}


def load_dotenv_files(directory: Path | None = None) -> list[Path]:
    """Load environment variables from .env files in the working directory.

    Files are loaded as ``.env``, ``.env.<ENV>``, ``.env.<ENV>.local``.
    Variables already present in the process environment are never
    overridden.

    Returns:
        The files that were loaded
    """
    from dotenv import load_dotenv

    root = directory or Path.cwd()
    env_name = os.environ.get("ENV", "development")

    env_files = [
        root / ".env",  # Base .env file
        root / f".env.{env_name}",  # Environment-specific file
        root / f".env.{env_name}.local",  # Local overrides (gitignored)
    ]

    loaded = []
    for env_file in env_files:
        if env_file.exists():
            load_dotenv(env_file, override=False)
            loaded.append(env_file)
    return loaded


class Environment(object):
    """
    Central access to schemashift configuration values.

    Settings are loaded lazily on first access; call load_settings() again
    to pick up changed files.
    """

    settings: Optional[Tuple[Dict[str, Any], Dict[str, Any]]] = None

    @classmethod
    def load_settings(cls):
        # Load .env files first
        load_dotenv_files()
        cls.settings = load_settings()

    @classmethod
    def get_settings(cls) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        if cls.settings is None:
            cls.load_settings()
        assert cls.settings is not None
        return cls.settings

    @classmethod
    def get(cls, key: str, default: Any = None):
        settings, secrets = cls.get_settings()
        return get_value(key, settings, secrets, DEFAULT_ENV, default)

    @classmethod
    def has_settings(cls):
        return get_system_file_path(SETTINGS_FILE).exists()

    @classmethod
    def get_env(cls):
        """
        The environment name, e.g. "development" or "production".
        """
        return cls.get("ENV")

    @classmethod
    def is_production(cls):
        return cls.get_env() == "production"

    @classmethod
    def get_db_path(cls) -> str:
        """
        Path of the SQLite database file, with ~ expanded.
        """
        return str(Path(cls.get("DB_PATH")).expanduser())

    @classmethod
    def get_postgres_url(cls) -> str | None:
        """
        PostgreSQL connection URL. When set, it takes precedence over DB_PATH.
        """
        return cls.get("POSTGRES_URL") or None

    @classmethod
    def get_migrations_path(cls) -> Path:
        return Path(cls.get("MIGRATIONS_PATH")).expanduser()

    @classmethod
    def get_table_prefix(cls) -> str:
        return cls.get("TABLE_PREFIX") or ""

    @classmethod
    def get_lock_timeout(cls) -> float:
        """
        Seconds to wait for the migration lock. Falls back to 30 on bad values.
        """
        raw = cls.get("LOCK_TIMEOUT")
        try:
            return float(raw)
        except (TypeError, ValueError):
            return float(DEFAULT_ENV["LOCK_TIMEOUT"])

    @classmethod
    def is_debug(cls):
        """
        Is debug flag on?
        """
        return cls.get("DEBUG")

    @classmethod
    def get_log_level(cls):
        """Return desired log level string.

        Priority:
        1) LOG_LEVEL env
        2) If DEBUG env is truthy, return "DEBUG"
        3) SCHEMASHIFT_LOG_LEVEL env (default "INFO")
        """
        level = os.getenv("LOG_LEVEL")
        if level:
            return str(level).upper()
        debug_env = os.getenv("DEBUG")
        if debug_env and debug_env.lower() not in ("0", "false", "no", "off", ""):
            return "DEBUG"
        return os.getenv("SCHEMASHIFT_LOG_LEVEL", "INFO").upper()
