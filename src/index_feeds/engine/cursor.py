# src/index_feeds/engine/cursor.py

from __future__ import annotations

import logging

from ..core.errors import CursorResolutionError, MessageNotFound
from ..core.models import IndexFeedInfo, indexed_key_of
from ..core.ports import LogStore
from .cancel import CancelToken

logger = logging.getLogger(__name__)


async def resolve_cursor(
        log: LogStore,
        feed: IndexFeedInfo,
        *,
        token: CancelToken | None = None,
        task_log: logging.Logger | None = None,
) -> int:
    """
    Sequence number (in the source log) of the last message already indexed by `feed`.

    0 means the index feed is empty. A last record that cannot be dereferenced
    raises CursorResolutionError: resuming from 0 would index everything twice.
    """
    log_ = task_log or logger

    if token is not None:
        token.raise_if_cancelled()
    log_.debug("setup: get last index msg from the db")
    latest = await log.latest_by_author(feed.feed_id)
    if latest is None:
        log_.debug("setup: latest sequence is 0")
        return 0

    key = indexed_key_of(latest)
    if key is None:
        raise CursorResolutionError(
            f"last message of {feed.feed_id} (seq {latest.sequence}) is not an index record",
            feed=feed,
        )

    if token is not None:
        token.raise_if_cancelled()
    try:
        source = await log.get(key)
    except MessageNotFound as e:
        raise CursorResolutionError(
            f"index feed {feed.feed_id} points to missing message {key}", feed=feed
        ) from e

    log_.debug("setup: latest sequence is %d", source.sequence)
    return source.sequence
