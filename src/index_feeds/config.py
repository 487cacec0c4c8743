# src/index_feeds/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets required at import time (the identity file is created on first run).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

ENV_PREFIX = "INDEX_FEEDS"

logger = logging.getLogger(__name__)

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


def _env_partial_queries(name: str) -> list[dict[str, Any]]:
    """
    Autostart list: a JSON array of partial queries, e.g.
        [{"type": "post", "private": false}, {"type": "vote", "private": false}]
    Entries that are not objects are skipped (and logged).
    """
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("%s is not valid JSON; autostart disabled", name)
        return []
    if not isinstance(data, list):
        logger.warning("%s must be a JSON array; autostart disabled", name)
        return []
    out: list[dict[str, Any]] = []
    for item in data:
        if isinstance(item, dict):
            out.append(item)
        else:
            logger.warning("%s: skipping non-object entry %r", name, item)
    return out


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Connector flags ----
    console_enabled: bool

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path
    secret_path: Path

    # ---- Engine tuning ----
    batch_size: int
    autostart: list[dict[str, Any]]

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "index-feeds").strip() or "index-feeds"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/index-feeds"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "log.sqlite3")
        secret_path = _env_path(_k("SECRET_PATH"), data_dir / "secret.json")

        batch_size = max(1, _env_int(_k("BATCH_SIZE"), 75))
        autostart = _env_partial_queries(_k("AUTOSTART"))

        return Settings(
            app_name=app_name,
            log_level=log_level,
            console_enabled=console_enabled,
            data_dir=data_dir,
            db_path=db_path,
            secret_path=secret_path,
            batch_size=batch_size,
            autostart=autostart,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
