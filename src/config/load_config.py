from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    v = str(value).strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


@dataclass(frozen=True)
class StoreConfig:
    db_path: Path
    busy_timeout_s: float = 5.0
    cleanup_on_startup: bool = True


def default_config_path() -> Path | None:
    raw = os.getenv("JOBRUNS_CONFIG_PATH", "").strip()
    if not raw:
        return None
    return Path(raw).expanduser().resolve()


def _resolve_path(value: Any, *, key: str, base_dir: Path) -> Path:
    p = Path(_as_str(value, key=key)).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p.resolve()


def default_db_path() -> str:
    return os.getenv("JOBRUNS_SQLITE_PATH", "data/job_runs.db")


def _read_store_section(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    import tomllib

    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e

    section = raw.get("store", {})
    if not isinstance(section, dict):
        raise ConfigError(f"Invalid [store] section in {path}")
    return section


def load_store_config(path: Path | None = None) -> StoreConfig:
    """Load store settings: TOML `[store]` section first, then `JOBRUNS_*` env overrides."""
    cfg_path = path or default_config_path()
    section = _read_store_section(cfg_path) if cfg_path is not None else {}

    # A relative db_path from the config file resolves against that file's directory.
    env_db_path = os.getenv("JOBRUNS_SQLITE_PATH")
    if env_db_path:
        db_path = Path(env_db_path).expanduser()
    elif section.get("db_path") is not None and cfg_path is not None:
        db_path = _resolve_path(section["db_path"], key="store.db_path", base_dir=cfg_path.parent.resolve())
    else:
        db_path = Path(default_db_path()).expanduser()

    busy_timeout = os.getenv("JOBRUNS_BUSY_TIMEOUT_S") or section.get("busy_timeout_s", 5.0)
    cleanup = os.getenv("JOBRUNS_CLEANUP_ON_STARTUP")
    if cleanup is None:
        cleanup = section.get("cleanup_on_startup", True)

    busy_timeout_s = _as_float(busy_timeout, key="store.busy_timeout_s")
    if busy_timeout_s < 0:
        raise ConfigError(f"Invalid store.busy_timeout_s: must be >= 0, got {busy_timeout_s!r}")

    return StoreConfig(
        db_path=db_path,
        busy_timeout_s=busy_timeout_s,
        cleanup_on_startup=_as_bool(cleanup, key="store.cleanup_on_startup"),
    )
