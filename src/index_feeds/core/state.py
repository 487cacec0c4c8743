# src/index_feeds/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..engine.service import IndexFeeds
from ..storage.log_store import LogStore
from ..storage.metafeeds import MetafeedRegistry
from .models import FeedKeys

if TYPE_CHECKING:
    from ..connectors.engine_runner import EngineRunner


@dataclass
class AppState:
    # Settings object (or a SimpleNamespace in tests).
    settings: Any

    keys: FeedKeys
    log: LogStore
    metafeeds: MetafeedRegistry
    engine: IndexFeeds

    # Set once the engine loop is running in the background thread.
    runner: EngineRunner | None = None

    @property
    def local_id(self) -> str:
        return self.keys.id
