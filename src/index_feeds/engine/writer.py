# src/index_feeds/engine/writer.py

from __future__ import annotations

import logging

from ..core.models import INDEX_FEED_FORMAT, Entry, IndexFeedInfo, MergedItem, Message, SyncPoint, index_record_content
from ..core.ports import LogStore
from .cancel import CancelToken
from .signals import BacklogSignals

logger = logging.getLogger(__name__)


class IndexWriter:
    """
    Consumes a merged stream one item at a time.

    Entry     -> append {"type": "metafeed/index", "indexed": key} to the index feed
    SyncPoint -> mark the query's backlog as drained (no write)

    Append failures propagate to the owning task; nothing is retried here.
    """

    def __init__(self, log: LogStore, signals: BacklogSignals) -> None:
        self._log = log
        self._signals = signals

    async def write_if_entry(
            self,
            item: MergedItem,
            feed: IndexFeedInfo,
            query_id: str,
            *,
            token: CancelToken | None = None,
            task_log: logging.Logger | None = None,
    ) -> Message | None:
        log_ = task_log or logger

        if isinstance(item, SyncPoint):
            log_.debug("backlog drained at seq %d", item.last_sequence)
            self._signals.mark_drained(query_id)
            return None

        if not isinstance(item, Entry):
            raise TypeError(f"unexpected merged item: {item!r}")

        if token is not None:
            token.raise_if_cancelled()

        source = item.message
        log_.debug("write index msg for %s (seq %d)", source.key, source.sequence)
        return await self._log.create(
            keys=feed.keys,
            content=index_record_content(source.key),
            feed_format=INDEX_FEED_FORMAT,
            payload=source,
        )
