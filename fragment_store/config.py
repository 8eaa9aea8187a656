"""
Runtime configuration for the fragment store.

Values come from explicit arguments first, then environment variables
(optionally loaded from a .env file), then built-in defaults.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)


DEFAULT_BUSY_TIMEOUT_MS = 5000
DEFAULT_INIT_LOCK_TIMEOUT_SEC = 10.0
DEFAULT_HALF_LIFE_DAYS = 30.0


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip()


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class StoreConfig:
    """Settings consumed by FragmentStore and its bootstrap."""

    db_path: str = ""
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    init_lock_timeout_sec: float = DEFAULT_INIT_LOCK_TIMEOUT_SEC
    init_lock_file: Optional[str] = None
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS

    @classmethod
    def from_env(cls, **overrides) -> "StoreConfig":
        values = {
            "db_path": _env_str("FRAGMENT_STORE_DB_PATH"),
            "busy_timeout_ms": _env_int(
                "FRAGMENT_STORE_BUSY_TIMEOUT_MS", DEFAULT_BUSY_TIMEOUT_MS
            ),
            "init_lock_timeout_sec": _env_float(
                "FRAGMENT_STORE_INIT_LOCK_TIMEOUT_SEC", DEFAULT_INIT_LOCK_TIMEOUT_SEC
            ),
            "init_lock_file": _env_str("FRAGMENT_STORE_INIT_LOCK_FILE") or None,
            "half_life_days": _env_float(
                "FRAGMENT_STORE_DECAY_HALF_LIFE_DAYS", DEFAULT_HALF_LIFE_DAYS
            ),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
