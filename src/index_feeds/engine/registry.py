# src/index_feeds/engine/registry.py

from __future__ import annotations

"""
Task registry.

One IndexTask per QueryID. A task goes through:

    starting     cursor is being resolved (already registered, so a concurrent
                 start() for the same query is a no-op)
    backfilling  backlog entries are being indexed
    live         backlog drained, following the live tail

A task leaves the registry when stop()/stop_all() is called or when its
pipeline ends, whether it failed or its source closed. Failed pipelines are
logged and never retried; calling start() again resumes from the last
record that was written.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..core.errors import PipelineCancelled
from ..core.models import Entry, IndexFeedInfo
from ..core.ports import LogStore
from ..core.query import Query
from .cancel import CancelToken
from .cursor import resolve_cursor
from .merger import DEFAULT_BATCH_SIZE, MergePhase, StreamMerger
from .writer import IndexWriter

logger = logging.getLogger(__name__)


class TaskPhase(StrEnum):
    STARTING = "starting"
    BACKFILLING = "backfilling"
    LIVE = "live"


@dataclass(slots=True)
class IndexTask:
    query_id: str
    query: Query
    feed: IndexFeedInfo
    number: int
    token: CancelToken = field(default_factory=CancelToken)
    phase: TaskPhase = TaskPhase.STARTING
    cursor: int = 0
    written: int = 0
    handle: asyncio.Task[None] | None = None

    @property
    def log(self) -> logging.Logger:
        return logging.getLogger(f"{__name__}.task{self.number}")

    def snapshot(self) -> dict[str, Any]:
        return {
            "query": self.query_id,
            "feed_id": self.feed.feed_id,
            "phase": self.phase.value,
            "cursor": self.cursor,
            "written": self.written,
        }


class TaskRegistry:
    def __init__(self, log: LogStore, writer: IndexWriter, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self._log = log
        self._writer = writer
        self._batch_size = batch_size
        self._tasks: dict[str, IndexTask] = {}
        self._count = 0

    def __contains__(self, query_id: object) -> bool:
        return query_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, query_id: str) -> IndexTask | None:
        return self._tasks.get(query_id)

    def running(self) -> list[IndexTask]:
        return list(self._tasks.values())

    def _discard(self, task: IndexTask) -> None:
        if self._tasks.get(task.query_id) is task:
            del self._tasks[task.query_id]

    async def schedule(self, query_id: str, query: Query, feed: IndexFeedInfo) -> IndexTask | None:
        """
        Start indexing `query` into `feed` unless a task for it already exists.

        Raises CursorResolutionError (and leaves nothing registered) if the
        index feed's last record cannot be dereferenced.
        """
        # Check-then-insert without an await in between: atomic on the event loop.
        if query_id in self._tasks:
            logger.warning("Not scheduling writing %s because there already is one", query_id)
            return None

        self._count += 1
        task = IndexTask(query_id=query_id, query=query, feed=feed, number=self._count)
        self._tasks[query_id] = task
        task.log.debug("setup for query %s", query_id)

        try:
            task.cursor = await resolve_cursor(self._log, feed, token=task.token, task_log=task.log)
        except PipelineCancelled:
            task.log.debug("stopped during setup")
            return None
        except BaseException:
            self._discard(task)
            raise

        if task.token.cancelled:
            task.log.debug("stopped during setup")
            return None

        task.phase = TaskPhase.BACKFILLING
        task.handle = asyncio.create_task(self._run(task), name=f"index-feeds-task{task.number}")
        return task

    async def _run(self, task: IndexTask) -> None:
        def on_phase_change(_old: MergePhase, new: MergePhase) -> None:
            if new == MergePhase.LIVE:
                task.phase = TaskPhase.LIVE

        merger = StreamMerger(
            self._log,
            task.query,
            task.cursor,
            token=task.token,
            batch_size=self._batch_size,
            on_phase_change=on_phase_change,
        )

        try:
            async with contextlib.aclosing(merger.items()) as items:
                async for item in items:
                    task.token.raise_if_cancelled()
                    record = await self._writer.write_if_entry(
                        item, task.feed, task.query_id, token=task.token, task_log=task.log
                    )
                    if record is not None and isinstance(item, Entry):
                        task.written += 1
                        task.cursor = item.message.sequence
        except PipelineCancelled:
            task.log.debug("task for query %s stopped", task.query_id)
        except asyncio.CancelledError:
            task.log.debug("task for query %s cancelled", task.query_id)
            raise
        except Exception:
            logger.warning("task for query %s failed", task.query_id, exc_info=True)
        else:
            task.log.debug("merged stream for %s ended", task.query_id)
        finally:
            self._discard(task)

    def stop(self, query_id: str) -> bool:
        """Cancel and deregister the task for `query_id`. False if none was running."""
        task = self._tasks.pop(query_id, None)
        if task is None:
            logger.warning("unnecessary stop() for query %s which wasnt running anyway", query_id)
            return False

        task.token.cancel()
        if task.handle is not None:
            task.handle.cancel()
        task.log.debug("stop requested")
        return True

    def stop_all(self) -> list[asyncio.Task[None]]:
        """Cancel and deregister every task. Returns the handles still winding down."""
        handles: list[asyncio.Task[None]] = []
        for task in self._tasks.values():
            task.token.cancel("teardown")
            if task.handle is not None:
                task.handle.cancel()
                handles.append(task.handle)
        self._tasks.clear()
        return handles

    async def aclose(self) -> None:
        handles = self.stop_all()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
