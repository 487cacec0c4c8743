# src/index_feeds/engine/service.py

from __future__ import annotations

"""
Public entry points of the index-feeds engine.

    feeds = IndexFeeds(local_id, log, metafeeds)
    info = await feeds.start({"author": local_id, "type": "post", "private": False})
    await feeds.done_old(query)     # backlog fully indexed
    feeds.stop(query)
    await feeds.close()             # on shutdown, before closing the log
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from ..core.errors import CursorResolutionError, IndexFeedsError, InvalidQuery, MissingCollaborator
from ..core.models import INDEX_FEED_FORMAT, INDEX_PURPOSE, QUERY_LANG, IndexFeedInfo
from ..core.ports import LogStore, SubfeedResolver
from ..core.query import Query, QueryInput, canonicalize, complete_query, parse, stringify
from ..storage.formats import IndexedV1Format
from .merger import DEFAULT_BATCH_SIZE
from .registry import TaskRegistry
from .signals import BacklogSignals
from .writer import IndexWriter

logger = logging.getLogger(__name__)


class IndexFeeds:
    name = "indexFeeds"
    version = "1.0.0"

    def __init__(
            self,
            local_id: str,
            log: LogStore | None,
            metafeeds: SubfeedResolver | None,
            *,
            batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if log is None:
            raise MissingCollaborator("index-feeds requires a log store")
        if metafeeds is None:
            raise MissingCollaborator("index-feeds requires a metafeed registry")

        self.local_id = local_id
        self._log = log
        self._metafeeds = metafeeds
        self._log.install_feed_format(IndexedV1Format())

        self.signals = BacklogSignals()
        self.registry = TaskRegistry(log, IndexWriter(log, self.signals), batch_size=batch_size)
        self._closed = False

    def _own_query(self, query: QueryInput) -> Query:
        q = parse(query)
        if q.author != self.local_id:
            raise InvalidQuery(f"Can only index our own messages, but got author {q.author}")
        return q

    async def start(self, query: QueryInput) -> IndexFeedInfo:
        """
        Find or create the index feed for `query` and make sure a task keeps it in sync.

        The feed info is returned whether or not a task was already running.
        """
        if self._closed:
            raise IndexFeedsError("index-feeds is closed")

        q = self._own_query(query)
        query_id = stringify(q)
        logger.debug("start() requested for %s", query_id)

        feed = await self._metafeeds.find_or_create(
            purpose=INDEX_PURPOSE,
            feed_format=INDEX_FEED_FORMAT,
            metadata={"querylang": QUERY_LANG, "query": query_id},
        )

        try:
            await self.registry.schedule(query_id, q, feed)
        except CursorResolutionError as e:
            if e.feed is None:
                e.feed = feed
            raise
        return feed

    def on_done_old(self, query: QueryInput, callback: Callable[[], object]) -> None:
        """Call `callback()` once the backlog of `query` is indexed (now, if it already is)."""
        self.signals.on_drained(canonicalize(query), callback)

    async def done_old(self, query: QueryInput) -> None:
        await self.signals.wait(canonicalize(query))

    def stop(self, query: QueryInput) -> None:
        try:
            query_id = canonicalize(query)
        except InvalidQuery as e:
            logger.warning("stop() ignored: %s", e)
            return
        logger.debug("stop() requested for %s", query_id)
        self.registry.stop(query_id)

    def is_running(self, query: QueryInput) -> bool:
        return canonicalize(query) in self.registry

    def status(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for task in self.registry.running():
            snap = task.snapshot()
            snap["drained"] = self.signals.is_drained(task.query_id)
            out.append(snap)
        return out

    async def autostart(self, partials: Iterable[Mapping[str, Any]]) -> list[IndexFeedInfo]:
        """Start every partial query (author omitted) for the local identity."""
        partials = list(partials)
        if partials:
            logger.debug("autostart is enabled with %s", partials)

        started: list[IndexFeedInfo] = []
        for partial in partials:
            try:
                started.append(await self.start(complete_query(partial, self.local_id)))
            except Exception:
                logger.exception("autostart failed for %s", partial)
        return started

    async def close(self) -> None:
        """Stop every task. Call before releasing the log store."""
        if self._closed:
            return
        self._closed = True
        logger.debug("teardown by cancelling all tasks")
        await self.registry.aclose()
