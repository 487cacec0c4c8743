# src/index_feeds/engine/merger.py

from __future__ import annotations

r"""
Backlog + live tail as one ordered stream.

    Entry(seq > cursor) ... Entry  SyncPoint  Entry(live) Entry(live) ...
    \________ backfilling ______/             \_______ live ________...

The live subscription is only opened once a backlog page comes back empty.
Messages appended while switching over are picked up by one more backlog
read before the SyncPoint, and the live side drops anything at or below the
last delivered sequence, so nothing is skipped or delivered twice.
"""

import logging
from collections.abc import AsyncIterator, Callable
from enum import StrEnum

from ..core.models import Entry, MergedItem, Message, SyncPoint
from ..core.ports import LiveSubscription, LogStore
from ..core.query import Query
from .cancel import CancelToken

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 75


class MergePhase(StrEnum):
    BACKFILLING = "backfilling"
    LIVE = "live"
    CLOSED = "closed"


PhaseListener = Callable[[MergePhase, MergePhase], None]


class StreamMerger:
    def __init__(
            self,
            log: LogStore,
            query: Query,
            cursor: int,
            *,
            token: CancelToken | None = None,
            batch_size: int = DEFAULT_BATCH_SIZE,
            on_phase_change: PhaseListener | None = None,
    ) -> None:
        self._log = log
        self._query = query
        self._token = token or CancelToken()
        self._batch_size = max(1, int(batch_size))
        self._on_phase_change = on_phase_change
        self._phase = MergePhase.BACKFILLING
        self._last_sequence = max(0, int(cursor))

    @property
    def phase(self) -> MergePhase:
        return self._phase

    @property
    def last_sequence(self) -> int:
        """Sequence of the last Entry handed to the consumer (the cursor while backfilling)."""
        return self._last_sequence

    def _set_phase(self, phase: MergePhase) -> None:
        old = self._phase
        if old == phase:
            return
        self._phase = phase
        logger.debug("merge %s -> %s at seq %d", old.value, phase.value, self._last_sequence)
        if self._on_phase_change is not None:
            self._on_phase_change(old, phase)

    def __aiter__(self) -> AsyncIterator[MergedItem]:
        return self.items()

    async def _backlog(self) -> AsyncIterator[Message]:
        while True:
            self._token.raise_if_cancelled()
            batch = await self._log.read_batch(
                self._query, after_sequence=self._last_sequence, limit=self._batch_size
            )
            if not batch:
                return
            for msg in batch:
                self._last_sequence = msg.sequence
                yield msg

    async def items(self) -> AsyncIterator[MergedItem]:
        subscription: LiveSubscription | None = None
        live: AsyncIterator[Message] | None = None
        try:
            async for msg in self._backlog():
                yield Entry(msg)

            subscription = self._log.subscribe(self._query)
            live = aiter(subscription)

            async for msg in self._backlog():
                yield Entry(msg)

            self._set_phase(MergePhase.LIVE)
            yield SyncPoint(self._last_sequence)

            while True:
                self._token.raise_if_cancelled()
                try:
                    msg = await anext(live)
                except StopAsyncIteration:
                    return
                if msg.sequence <= self._last_sequence or not self._query.matches(msg):
                    continue
                self._last_sequence = msg.sequence
                yield Entry(msg)
        finally:
            if subscription is not None:
                subscription.close()
            if live is not None and hasattr(live, "aclose"):
                await live.aclose()
            self._set_phase(MergePhase.CLOSED)
