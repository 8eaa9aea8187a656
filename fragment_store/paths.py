"""Location of the on-disk fragment database."""

import os
from pathlib import Path
from typing import Optional

MEMORY_SENTINEL = ":memory:"
APP_DIR_NAME = "fragment-store"
DB_FILE_NAME = "memory.db"


def get_data_dir() -> Path:
    """XDG data directory for the store ($XDG_DATA_HOME or ~/.local/share)."""
    xdg_data = os.getenv("XDG_DATA_HOME", "").strip()
    if xdg_data:
        return Path(xdg_data) / APP_DIR_NAME
    return Path.home() / ".local" / "share" / APP_DIR_NAME


def get_default_db_path() -> Path:
    return get_data_dir() / DB_FILE_NAME


def resolve_db_path(path_override: Optional[str] = None) -> str:
    """
    Resolve an optional database path override.

    Blank -> XDG default, ":memory:" -> unchanged, anything else is
    env-expanded, ~-expanded and made absolute.
    """
    value = (path_override or "").strip()
    if not value:
        return str(get_default_db_path().resolve())
    if value == MEMORY_SENTINEL:
        return value

    expanded = os.path.expanduser(os.path.expandvars(value))
    return str(Path(expanded).resolve())


def is_memory_path(db_path: str) -> bool:
    return db_path == MEMORY_SENTINEL


def database_url(db_path: str) -> str:
    """SQLAlchemy async URL for a resolved path."""
    if is_memory_path(db_path):
        return "sqlite+aiosqlite://"
    return f"sqlite+aiosqlite:///{db_path}"
