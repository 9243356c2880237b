# entrance/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for the entrance check-in service.

Single source of truth:
    config/config.yaml   (override with ENTRANCE_CONFIG=/abs/or/relative/path.yaml)

Design notes
------------
- One file, no merging. Unknown keys are passed through untouched.
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Helpers return {} or sensible defaults when sections are absent.
- Paths are absolute (resolved against the repo root) unless already absolute.
- The storage backend may be overridden with ENTRANCE_STORAGE=sqlite|rest|memory.

Public API
----------
- load_config(path: str|Path|None = None)   # explicit (re)load, mainly for tests/tools
- get_config() -> dict                      # cached view, loaded on first use
- get_storage_cfg(cfg=None) -> dict
- get_db_path(cfg=None) -> pathlib.Path
- get_checkin_cfg(cfg=None) -> dict
- get_scanner_cfg(cfg=None) -> dict
- get_publisher_cfg(cfg=None) -> dict
- get_log_level(default: str = "INFO", cfg=None) -> str
- get_server_bind(cfg=None) -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"

STORAGE_BACKENDS = ("sqlite", "rest", "memory")

_CONFIG: Optional[Dict[str, Any]] = None


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with an 'app:' section.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except Exception as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except Exception as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


def validate_config(cfg: Dict[str, Any], source: str = "<dict>") -> Dict[str, Any]:
    """
    Minimal structural contract for service startup. Returns `cfg` unchanged.
    Applies the ENTRANCE_STORAGE override in place.
    """
    app = cfg.get("app")
    if not isinstance(app, dict):
        raise RuntimeError(
            f"CONFIG {source} missing required top-level 'app:' mapping.\n"
            "See config/config.yaml template."
        )

    storage = app.setdefault("storage", {}) or {}
    app["storage"] = storage
    env_backend = os.getenv("ENTRANCE_STORAGE", "").strip().lower()
    if env_backend:
        storage["backend"] = env_backend

    backend = str(storage.get("backend", "sqlite")).lower()
    if backend not in STORAGE_BACKENDS:
        raise RuntimeError(
            f"CONFIG {source}: app.storage.backend must be one of {', '.join(STORAGE_BACKENDS)}, "
            f"got {backend!r}"
        )

    if backend == "sqlite":
        sqlite_path = storage.get("sqlite_path")
        if not isinstance(sqlite_path, (str, os.PathLike)) or not str(sqlite_path).strip():
            raise RuntimeError(
                f"CONFIG {source} missing required key: app.storage.sqlite_path\n"
                "The sqlite backend needs a database path (e.g. data/entrance.sqlite)."
            )

    if backend == "rest":
        rest = storage.get("rest") or {}
        if not str(rest.get("base_url") or "").strip():
            raise RuntimeError(
                f"CONFIG {source} missing required key: app.storage.rest.base_url"
            )
    return cfg


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: ENTRANCE_CONFIG or config/config.yaml),
    validate required shape, cache it for the accessors and return the dict.
    """
    global _CONFIG
    env_path = os.getenv("ENTRANCE_CONFIG", "").strip()
    if path:
        cfg_path = resolve_path(path)
    elif env_path:
        cfg_path = resolve_path(env_path)
    else:
        cfg_path = DEFAULT_CFG
    cfg = validate_config(_load_yaml(cfg_path), source=str(cfg_path))
    _CONFIG = cfg
    return cfg


def get_config() -> Dict[str, Any]:
    """Return the cached config, loading the default file on first use."""
    if _CONFIG is None:
        return load_config()
    return _CONFIG


def _cfg(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return cfg if cfg is not None else get_config()


# ---------- Accessors ----------
def get_storage_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return app.storage or {}."""
    return (_cfg(cfg).get("app", {}) or {}).get("storage", {}) or {}


def get_db_path(cfg: Optional[Dict[str, Any]] = None) -> Path:
    """Return absolute filesystem path to the SQLite database."""
    sqlite_path = get_storage_cfg(cfg).get("sqlite_path")
    if not sqlite_path:
        raise RuntimeError("CONFIG missing app.storage.sqlite_path")
    if str(sqlite_path) == ":memory:":
        return Path(":memory:")
    return resolve_path(sqlite_path)


def get_checkin_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return app.checkin (log limits, token truncation) or {}."""
    return (_cfg(cfg).get("app", {}) or {}).get("checkin", {}) or {}


def get_scanner_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return scanner configuration block (keyboard/serial/camera/feed) or {}."""
    return _cfg(cfg).get("scanner", {}) or {}


def get_publisher_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return publisher configuration block or {} (mode/http)."""
    return _cfg(cfg).get("publisher", {}) or {}


def get_log_level(default: str = "INFO", cfg: Optional[Dict[str, Any]] = None) -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = (_cfg(cfg).get("log", {}) or {}).get("level", default)
    return str(lvl).upper()


def get_server_bind(cfg: Optional[Dict[str, Any]] = None) -> Tuple[str, int]:
    """Return (host, port) from app.server, default ('127.0.0.1', 8000)."""
    server = (_cfg(cfg).get("app", {}) or {}).get("server", {}) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port
    return "127.0.0.1", 8000
# ---------- End of config_loader.py ----------
