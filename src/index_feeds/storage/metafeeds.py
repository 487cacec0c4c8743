# src/index_feeds/storage/metafeeds.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sqlite3
import time
from pathlib import Path

from ..core.errors import SubfeedResolutionError
from ..core.models import FeedKeys, IndexFeedInfo
from .keys import generate_keys

logger = logging.getLogger(__name__)


def _canonical_metadata(metadata: dict[str, str]) -> str:
    return json.dumps(metadata, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class MetafeedRegistry:
    """
    SQLite registry of feeds derived from a root identity.

    find_or_create() is idempotent: one (purpose, feed_format, metadata) triple
    maps to exactly one feed for the life of the database.
    """

    def __init__(self, db_path: str | Path, root: FeedKeys) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._root = root
        self._lock = asyncio.Lock()
        self._ensure_schema()
        logger.info("MetafeedRegistry ready db=%s root=%s", self._db_path, root.id)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subfeeds (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    parent TEXT NOT NULL,
                    purpose TEXT NOT NULL,
                    feed_format TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    feed_id TEXT NOT NULL UNIQUE,
                    keys TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    UNIQUE(parent, purpose, feed_format, metadata)
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_info(row: sqlite3.Row) -> IndexFeedInfo:
        return IndexFeedInfo(
            purpose=str(row["purpose"]),
            feed_id=str(row["feed_id"]),
            keys=FeedKeys.from_dict(json.loads(row["keys"])),
            metadata=json.loads(row["metadata"]),
            feed_format=str(row["feed_format"]),
        )

    def _find_or_create_sync(self, purpose: str, feed_format: str, metadata: dict[str, str]) -> IndexFeedInfo:
        meta_str = _canonical_metadata(metadata)
        conn = self._get_conn()
        try:
            row = conn.execute(
                """
                SELECT * FROM subfeeds
                WHERE parent = ? AND purpose = ? AND feed_format = ? AND metadata = ?
                """,
                (self._root.id, purpose, feed_format, meta_str),
            ).fetchone()
            if row is not None:
                return self._row_to_info(row)

            keys = generate_keys()
            conn.execute(
                """
                INSERT INTO subfeeds(parent, purpose, feed_format, metadata, feed_id, keys, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self._root.id,
                    purpose,
                    feed_format,
                    meta_str,
                    keys.id,
                    json.dumps(keys.to_dict()),
                    time.time(),
                ),
            )
            conn.commit()
            logger.info("Created subfeed %s purpose=%s metadata=%s", keys.id, purpose, meta_str)
            return IndexFeedInfo(
                purpose=purpose,
                feed_id=keys.id,
                keys=keys,
                metadata=json.loads(meta_str),
                feed_format=feed_format,
            )
        finally:
            conn.close()

    async def find_or_create(
            self,
            *,
            purpose: str,
            feed_format: str,
            metadata: dict[str, str],
    ) -> IndexFeedInfo:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._find_or_create_sync, purpose, feed_format, metadata)
            except (sqlite3.Error, ValueError, KeyError) as e:
                raise SubfeedResolutionError(f"find_or_create failed for {purpose}: {e}") from e

    def list_subfeeds(self, purpose: str | None = None) -> list[IndexFeedInfo]:
        conn = self._get_conn()
        try:
            if purpose is None:
                rows = conn.execute(
                    "SELECT * FROM subfeeds WHERE parent = ? ORDER BY id ASC", (self._root.id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM subfeeds WHERE parent = ? AND purpose = ? ORDER BY id ASC",
                    (self._root.id, purpose),
                ).fetchall()
            return [self._row_to_info(r) for r in rows]
        finally:
            conn.close()
