# src/index_feeds/storage/log_store.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sqlite3
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from ..core.errors import FeedFormatError, MessageNotFound
from ..core.models import AppendRequest, FeedKeys, Message
from ..core.ports import FeedFormat
from ..core.query import Query
from .formats import ClassicFormat

logger = logging.getLogger(__name__)


class LogSubscription:
    """
    Live tail of a LogStore for one query.

    Holds no message buffer: appends only set an Event, and the iterator
    re-reads everything past the last row it delivered. A slow consumer
    therefore costs nothing but a flag.
    """

    def __init__(self, store: LogStore, query: Query, after_id: int) -> None:
        self._store = store
        self._query = query
        self._after_id = after_id
        self._event = asyncio.Event()
        self._closed = False

    def notify(self) -> None:
        self._event.set()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._unsubscribe(self)
        self._event.set()

    def __aiter__(self) -> AsyncIterator[Message]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Message]:
        try:
            while not self._closed:
                # Clear before reading so an append racing the read is not lost.
                self._event.clear()
                rows = await self._store._read_after_id(self._query, self._after_id)
                if not rows:
                    await self._event.wait()
                    continue
                for row_id, msg in rows:
                    if self._closed:
                        return
                    self._after_id = row_id
                    yield msg
        finally:
            self.close()


class LogStore:
    """
    SQLite append-only log.

    Holds the local identity's own feed and every derived feed in one table.
    Each author's messages get contiguous sequence numbers starting at 1.

    The schema is migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Concurrency:
    - each call opens its own SQLite connection inside a worker thread
    - appends are serialized and, once started, run to completion even if
      the awaiting task is cancelled
    """

    def __init__(self, db_path: str | Path = "log.sqlite3", *, live_page_size: int = 100) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._live_page_size = max(1, int(live_page_size))
        self._formats: dict[str, FeedFormat] = {}
        self._subscribers: set[LogSubscription] = set()
        self._write_lock = asyncio.Lock()

        self._ensure_schema()
        self.install_feed_format(ClassicFormat())
        self._last_id = self._max_id()
        try:
            total = self.count_messages()
        except sqlite3.Error:
            total = -1
        logger.info("LogStore ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        for sub in list(self._subscribers):
            sub.close()

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    key TEXT NOT NULL UNIQUE,
                    author TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    timestamp REAL NOT NULL,
                    type TEXT,
                    private INTEGER NOT NULL DEFAULT 0,
                    feed_format TEXT NOT NULL DEFAULT 'classic',
                    previous TEXT,
                    signature TEXT NOT NULL DEFAULT '',
                    content TEXT NOT NULL DEFAULT '{}',
                    UNIQUE(author, sequence)
                )
                """
            )

            cur.execute("PRAGMA table_info(messages)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE messages ADD COLUMN {name} {decl}")
                logger.info("LogStore migration: added column %s", name)

            add_col("type", "TEXT")
            add_col("private", "INTEGER NOT NULL DEFAULT 0")
            add_col("feed_format", "TEXT NOT NULL DEFAULT 'classic'")
            add_col("previous", "TEXT")
            add_col("signature", "TEXT NOT NULL DEFAULT ''")

            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_query "
                "ON messages(author, private, type, sequence)"
            )

            conn.commit()
        finally:
            conn.close()

    def _max_id(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COALESCE(MAX(id), 0) FROM messages").fetchone()
            return int(n)
        finally:
            conn.close()

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        try:
            content = json.loads(row["content"] or "{}")
        except ValueError:
            content = {}
        return Message(
            key=str(row["key"]),
            author=str(row["author"]),
            sequence=int(row["sequence"]),
            timestamp=float(row["timestamp"] or 0.0),
            content=content if isinstance(content, dict) else {},
            private=bool(row["private"]),
            feed_format=str(row["feed_format"] or "classic"),
            previous=row["previous"],
            signature=str(row["signature"] or ""),
        )

    @staticmethod
    def _where(query: Query) -> tuple[str, list[Any]]:
        clauses = ["author = ?", "private = ?"]
        params: list[Any] = [query.author, 1 if query.private else 0]
        if query.type is not None:
            clauses.append("type = ?")
            params.append(query.type)
        return " AND ".join(clauses), params

    def _unsubscribe(self, sub: LogSubscription) -> None:
        self._subscribers.discard(sub)

    # ---- sync bodies (run in worker threads) ----

    def _read_batch_sync(self, query: Query, after_sequence: int, limit: int) -> list[Message]:
        where, params = self._where(query)
        conn = self._get_conn()
        try:
            cur = conn.execute(
                f"SELECT * FROM messages WHERE {where} AND sequence > ? ORDER BY sequence ASC LIMIT ?",
                (*params, int(after_sequence), int(limit)),
            )
            return [self._row_to_message(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def _read_after_id_sync(self, query: Query, after_id: int) -> list[tuple[int, Message]]:
        where, params = self._where(query)
        conn = self._get_conn()
        try:
            cur = conn.execute(
                f"SELECT * FROM messages WHERE {where} AND id > ? ORDER BY id ASC LIMIT ?",
                (*params, int(after_id), self._live_page_size),
            )
            return [(int(r["id"]), self._row_to_message(r)) for r in cur.fetchall()]
        finally:
            conn.close()

    def _get_sync(self, key: str) -> Message:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM messages WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise MessageNotFound(key)
        return self._row_to_message(row)

    def _list_by_author_sync(self, author: str, limit: int, descending: bool) -> list[Message]:
        order = "DESC" if descending else "ASC"
        conn = self._get_conn()
        try:
            cur = conn.execute(
                f"SELECT * FROM messages WHERE author = ? ORDER BY sequence {order} LIMIT ?",
                (author, int(limit)),
            )
            return [self._row_to_message(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def _append_sync(
            self,
            keys: FeedKeys,
            content: dict[str, Any],
            feed_format: FeedFormat,
            payload: Message | None,
            private: bool,
    ) -> tuple[int, Message]:
        conn = self._get_conn()
        try:
            prev = conn.execute(
                "SELECT key, sequence FROM messages WHERE author = ? ORDER BY sequence DESC LIMIT 1",
                (keys.id,),
            ).fetchone()
            request = AppendRequest(
                keys=keys,
                content=content,
                sequence=(int(prev["sequence"]) + 1) if prev else 1,
                previous=str(prev["key"]) if prev else None,
                timestamp=time.time(),
                private=private,
                payload=payload,
            )
            key, signature = feed_format.encode(request)
            msg = Message(
                key=key,
                author=keys.id,
                sequence=request.sequence,
                timestamp=request.timestamp,
                content=content,
                private=private,
                feed_format=feed_format.name,
                previous=request.previous,
                signature=signature,
            )
            mtype = msg.type
            cur = conn.execute(
                """
                INSERT INTO messages(
                    key, author, sequence, timestamp, type, private,
                    feed_format, previous, signature, content
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    msg.key,
                    msg.author,
                    msg.sequence,
                    msg.timestamp,
                    mtype,
                    1 if private else 0,
                    msg.feed_format,
                    msg.previous,
                    msg.signature,
                    json.dumps(content, ensure_ascii=False),
                ),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for messages insert")
            return int(rowid), msg
        finally:
            conn.close()

    # ---- public API ----

    def install_feed_format(self, feed_format: FeedFormat) -> None:
        if feed_format.name in self._formats:
            logger.debug("Feed format %s already installed", feed_format.name)
            return
        self._formats[feed_format.name] = feed_format
        logger.debug("Installed feed format %s", feed_format.name)

    def count_messages(self, author: str | None = None) -> int:
        conn = self._get_conn()
        try:
            if author is None:
                (n,) = conn.execute("SELECT COUNT(*) FROM messages").fetchone()
            else:
                (n,) = conn.execute("SELECT COUNT(*) FROM messages WHERE author = ?", (author,)).fetchone()
            return int(n)
        finally:
            conn.close()

    async def read_batch(self, query: Query, *, after_sequence: int, limit: int) -> list[Message]:
        return await asyncio.to_thread(self._read_batch_sync, query, after_sequence, limit)

    async def _read_after_id(self, query: Query, after_id: int) -> list[tuple[int, Message]]:
        return await asyncio.to_thread(self._read_after_id_sync, query, after_id)

    def subscribe(self, query: Query) -> LogSubscription:
        """Open a live tail starting after the last append this store has seen."""
        sub = LogSubscription(self, query, self._last_id)
        self._subscribers.add(sub)
        return sub

    async def get(self, key: str) -> Message:
        return await asyncio.to_thread(self._get_sync, key)

    async def latest_by_author(self, author: str) -> Message | None:
        """Last message of `author`, read after any append already in flight has landed."""
        async with self._write_lock:
            rows = await asyncio.to_thread(self._list_by_author_sync, author, 1, True)
        return rows[0] if rows else None

    async def list_by_author(self, author: str, *, limit: int = 100, descending: bool = False) -> list[Message]:
        return await asyncio.to_thread(self._list_by_author_sync, author, limit, descending)

    async def create(
            self,
            *,
            keys: FeedKeys,
            content: dict[str, Any],
            feed_format: str = "classic",
            payload: Message | None = None,
            private: bool = False,
    ) -> Message:
        """
        Encode `content` with `feed_format` and append it to the feed of `keys`.

        An append that has started is not rolled back by cancellation.
        """
        fmt = self._formats.get(feed_format)
        if fmt is None:
            raise FeedFormatError(f"unknown feed format: {feed_format}")
        return await asyncio.shield(self._append(keys, content, fmt, payload, private))

    async def _append(
            self,
            keys: FeedKeys,
            content: dict[str, Any],
            fmt: FeedFormat,
            payload: Message | None,
            private: bool,
    ) -> Message:
        async with self._write_lock:
            row_id, msg = await asyncio.to_thread(self._append_sync, keys, content, fmt, payload, private)
            self._last_id = max(self._last_id, row_id)
        logger.debug("Appended %s seq=%s format=%s", msg.author, msg.sequence, msg.feed_format)
        for sub in list(self._subscribers):
            sub.notify()
        return msg
