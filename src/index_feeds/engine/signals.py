# src/index_feeds/engine/signals.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class BacklogSignals:
    """
    One-shot "backlog drained" broadcast, keyed by QueryID.

    Once a query is marked drained it stays drained for the life of the
    engine (a restarted task does not reset it), so late subscribers are
    notified immediately.
    """

    def __init__(self) -> None:
        self._drained: set[str] = set()
        self._waiters: dict[str, list[Callable[[], object]]] = {}
        self._events: dict[str, asyncio.Event] = {}

    def is_drained(self, query_id: str) -> bool:
        return query_id in self._drained

    def on_drained(self, query_id: str, callback: Callable[[], object]) -> None:
        if query_id in self._drained:
            callback()
            return
        self._waiters.setdefault(query_id, []).append(callback)

    def mark_drained(self, query_id: str) -> None:
        if query_id in self._drained:
            return
        self._drained.add(query_id)

        event = self._events.pop(query_id, None)
        if event is not None:
            event.set()

        for callback in self._waiters.pop(query_id, []):
            try:
                callback()
            except Exception:
                logger.exception("done_old listener failed for query %s", query_id)

    async def wait(self, query_id: str) -> None:
        if query_id in self._drained:
            return
        event = self._events.get(query_id)
        if event is None:
            event = self._events[query_id] = asyncio.Event()
        await event.wait()

    def pending(self, query_id: str) -> int:
        return len(self._waiters.get(query_id, []))
