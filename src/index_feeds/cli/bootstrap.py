# src/index_feeds/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- loads or creates the local identity,
- wires the log store, metafeed registry and engine into AppState.
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.state import AppState
from ..engine.service import IndexFeeds
from ..storage.keys import load_or_create_keys
from ..storage.log_store import LogStore
from ..storage.metafeeds import MetafeedRegistry

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.secret_path.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    keys = load_or_create_keys(settings.secret_path)
    log = LogStore(settings.db_path)
    metafeeds = MetafeedRegistry(settings.db_path, keys)
    engine = IndexFeeds(keys.id, log, metafeeds, batch_size=settings.batch_size)

    logger.info("Identity %s, db=%s", keys.id, settings.db_path)
    return AppState(settings=settings, keys=keys, log=log, metafeeds=metafeeds, engine=engine)
