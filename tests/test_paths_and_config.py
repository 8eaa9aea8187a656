from pathlib import Path

from fragment_store import config as config_module
from fragment_store.config import StoreConfig
from fragment_store.paths import (
    MEMORY_SENTINEL,
    database_url,
    get_default_db_path,
    resolve_db_path,
)


def test_blank_override_uses_xdg_data_home(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))

    resolved = resolve_db_path("")

    assert resolved == str((tmp_path / "xdg" / "fragment-store" / "memory.db").resolve())
    assert Path(resolved) == get_default_db_path().resolve()


def test_blank_override_falls_back_to_home(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("XDG_DATA_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))

    resolved = resolve_db_path(None)

    assert resolved == str(
        (tmp_path / ".local" / "share" / "fragment-store" / "memory.db").resolve()
    )


def test_memory_sentinel_is_returned_unchanged() -> None:
    assert resolve_db_path(MEMORY_SENTINEL) == ":memory:"
    assert database_url(":memory:") == "sqlite+aiosqlite://"


def test_override_expands_home_and_env_vars(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("FRAGMENT_TEST_DIR", "stores")

    resolved = resolve_db_path("~/$FRAGMENT_TEST_DIR/agent.db")

    assert resolved == str((tmp_path / "stores" / "agent.db").resolve())
    assert Path(resolved).is_absolute()
    assert database_url(resolved) == f"sqlite+aiosqlite:///{resolved}"


def test_relative_override_is_made_absolute(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    resolved = resolve_db_path("data/memory.db")

    assert resolved == str((tmp_path / "data" / "memory.db").resolve())


def test_store_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("FRAGMENT_STORE_DB_PATH", "/tmp/fragments.db")
    monkeypatch.setenv("FRAGMENT_STORE_BUSY_TIMEOUT_MS", "2500")
    monkeypatch.setenv("FRAGMENT_STORE_INIT_LOCK_TIMEOUT_SEC", "3.5")
    monkeypatch.setenv("FRAGMENT_STORE_DECAY_HALF_LIFE_DAYS", "14")
    monkeypatch.setenv("FRAGMENT_STORE_INIT_LOCK_FILE", "custom.lock")

    cfg = StoreConfig.from_env()

    assert cfg.db_path == "/tmp/fragments.db"
    assert cfg.busy_timeout_ms == 2500
    assert cfg.init_lock_timeout_sec == 3.5
    assert cfg.half_life_days == 14.0
    assert cfg.init_lock_file == "custom.lock"


def test_store_config_invalid_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("FRAGMENT_STORE_BUSY_TIMEOUT_MS", "soon")
    monkeypatch.setenv("FRAGMENT_STORE_DECAY_HALF_LIFE_DAYS", "not-a-number")
    monkeypatch.delenv("FRAGMENT_STORE_INIT_LOCK_FILE", raising=False)

    cfg = StoreConfig.from_env()

    assert cfg.busy_timeout_ms == config_module.DEFAULT_BUSY_TIMEOUT_MS
    assert cfg.half_life_days == config_module.DEFAULT_HALF_LIFE_DAYS
    assert cfg.init_lock_file is None


def test_store_config_overrides_win_over_environment(monkeypatch) -> None:
    monkeypatch.setenv("FRAGMENT_STORE_BUSY_TIMEOUT_MS", "2500")

    cfg = StoreConfig.from_env(busy_timeout_ms=100, db_path=None)

    assert cfg.busy_timeout_ms == 100
