"""
First-run initialization of the fragment database.

Creates the ORM tables and the FTS mirror, then rebuilds the mirror once
(recorded in memory_meta). File databases are initialized under a
cross-process lock so concurrent short-lived processes cannot race on
table creation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from filelock import FileLock, Timeout
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

from .errors import StorageError
from .schema import (
    Base,
    FTS_DDL,
    META_FTS_INITIALIZED,
    META_FTS_REBUILT_AT,
)
from .timestamps import format_timestamp, utc_now_naive

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".init.lock"

_UPSERT_META_SQL = (
    "INSERT INTO memory_meta(key, value) VALUES (:key, :value) "
    "ON CONFLICT(key) DO UPDATE SET value = excluded.value"
)


@dataclass(frozen=True)
class BootstrapResult:
    fts_rebuilt: bool
    locked: bool


def default_lock_path(db_file: Path) -> Path:
    if db_file.suffix:
        return db_file.with_suffix(db_file.suffix + _LOCK_SUFFIX)
    return Path(f"{db_file}{_LOCK_SUFFIX}")


def set_meta_sync(connection: Connection, key: str, value: str) -> None:
    connection.execute(text(_UPSERT_META_SQL), {"key": key, "value": value})


def rebuild_fts_sync(connection: Connection) -> None:
    """Repopulate the mirror from memory_fragments."""
    connection.execute(text("INSERT INTO memory_fts(memory_fts) VALUES('rebuild')"))
    set_meta_sync(connection, META_FTS_INITIALIZED, "1")
    set_meta_sync(connection, META_FTS_REBUILT_AT, format_timestamp(utc_now_naive()))


def ensure_fts_initialized(connection: Connection) -> bool:
    """Rebuild the mirror unless a previous run already did. Returns True if rebuilt."""
    marker = connection.execute(
        text("SELECT value FROM memory_meta WHERE key = :key"),
        {"key": META_FTS_INITIALIZED},
    ).scalar_one_or_none()
    if marker is not None:
        return False
    rebuild_fts_sync(connection)
    return True


class SchemaBootstrap:
    """Idempotent schema creation with an optional file lock."""

    def __init__(
        self,
        engine: AsyncEngine,
        database_file: Optional[Path] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.engine = engine
        self.database_file = Path(database_file) if database_file is not None else None
        explicit_lock_path = self._normalize_lock_path(lock_file_path)
        if explicit_lock_path is not None:
            self.lock_file_path: Optional[Path] = explicit_lock_path
        elif self.database_file is not None:
            self.lock_file_path = default_lock_path(self.database_file)
        else:
            # In-memory databases are private to this process.
            self.lock_file_path = None
        self.lock_timeout_seconds = max(0.0, float(lock_timeout_seconds))

    def _normalize_lock_path(
        self, raw_path: Optional[Union[Path, str]]
    ) -> Optional[Path]:
        if raw_path is None:
            return None
        text_value = str(raw_path).strip()
        if not text_value:
            return None
        candidate = Path(text_value).expanduser()
        if candidate.is_absolute():
            return candidate.resolve()
        if self.database_file is not None:
            return (self.database_file.parent / candidate).resolve()
        return candidate.resolve()

    async def apply(self) -> BootstrapResult:
        if self.lock_file_path is None:
            rebuilt = await self._apply_unlocked()
            return BootstrapResult(fts_rebuilt=rebuilt, locked=False)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        # Acquired off the event loop; thread_local=False lets the loop release it.
        lock = FileLock(
            str(self.lock_file_path),
            timeout=self.lock_timeout_seconds,
            thread_local=False,
        )
        try:
            await asyncio.to_thread(lock.acquire)
        except Timeout as exc:
            raise StorageError(
                "init_db",
                "timed out waiting for init lock: "
                f"{self.lock_file_path} ({self.lock_timeout_seconds}s)",
            ) from exc
        try:
            rebuilt = await self._apply_unlocked()
        finally:
            lock.release()
        return BootstrapResult(fts_rebuilt=rebuilt, locked=True)

    async def _apply_unlocked(self) -> bool:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await conn.execute(text(FTS_DDL))
            rebuilt = await conn.run_sync(ensure_fts_initialized)
        if rebuilt:
            logger.info("Full-text mirror rebuilt during bootstrap")
        return rebuilt
