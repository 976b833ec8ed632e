from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import logging
import os
import sys


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class Settings:
    db_path: Path
    logs_dir: Path
    terminal_code: str = "POS"
    busy_timeout: float = 10.0
    broadcast_url: Optional[str] = None
    log_level: int = logging.INFO


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "StockLedger") -> AppPaths:
    if sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "ledger.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    paths = get_app_paths()

    db_path = Path(env["STOCKLEDGER_DB_PATH"]) if env.get("STOCKLEDGER_DB_PATH") else paths.db_path
    terminal = (env.get("STOCKLEDGER_TERMINAL", "").strip() or "POS").upper()[:5]
    try:
        busy_timeout = float(env.get("STOCKLEDGER_BUSY_TIMEOUT", "10"))
    except ValueError:
        busy_timeout = 10.0
    broadcast_url = env.get("STOCKLEDGER_BROADCAST_URL", "").strip() or None
    level_name = env.get("STOCKLEDGER_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(level_name)

    return Settings(
        db_path=db_path,
        logs_dir=paths.logs_dir,
        terminal_code=terminal,
        busy_timeout=busy_timeout if busy_timeout > 0 else 10.0,
        broadcast_url=broadcast_url,
        log_level=level if isinstance(level, int) else logging.INFO,
    )
