# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

from index_feeds.cli.bootstrap import create_initial_state
from index_feeds.core.models import FeedKeys
from index_feeds.core.state import AppState
from index_feeds.engine.service import IndexFeeds
from index_feeds.storage.keys import generate_keys
from index_feeds.storage.log_store import LogStore
from index_feeds.storage.metafeeds import MetafeedRegistry


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with bootstrap and the engine.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="index-feeds-test",
        log_level="DEBUG",
        console_enabled=False,
        data_dir=tmp_path,
        db_path=tmp_path / "log.sqlite3",
        secret_path=tmp_path / "secret.json",
        batch_size=2,
        autostart=[],
    )


@pytest.fixture()
def keys() -> FeedKeys:
    return generate_keys()


@pytest.fixture()
def log(tmp_path: Path) -> LogStore:
    return LogStore(tmp_path / "log.sqlite3")


@pytest.fixture()
def metafeeds(tmp_path: Path, keys: FeedKeys) -> MetafeedRegistry:
    return MetafeedRegistry(tmp_path / "log.sqlite3", keys)


@pytest_asyncio.fixture()
async def engine(keys: FeedKeys, log: LogStore, metafeeds: MetafeedRegistry):
    """
    Engine over real SQLite stores, with a tiny batch size so pagination
    is exercised even with a handful of messages.
    """
    feeds = IndexFeeds(keys.id, log, metafeeds, batch_size=2)
    yield feeds
    await feeds.close()


@pytest.fixture()
def state(settings: SimpleNamespace) -> AppState:
    return create_initial_state(settings=settings)
