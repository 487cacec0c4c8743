# src/index_feeds/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the engine.

The engine depends on Protocols instead of concrete implementations.
This keeps the log store / subfeed registry swappable and makes testing easier.
"""

from collections.abc import AsyncIterator
from typing import Any, Protocol

from .models import AppendRequest, FeedKeys, IndexFeedInfo, Message
from .query import Query


class FeedFormat(Protocol):
    """Encodes and signs the next message of a feed."""

    name: str

    def encode(self, request: AppendRequest) -> tuple[str, str]:
        """Return (message key, signature) for the message described by `request`."""
        ...


class LiveSubscription(Protocol):
    """Messages appended after the subscription was opened, in arrival order."""

    def __aiter__(self) -> AsyncIterator[Message]: ...
    def close(self) -> None: ...


class LogStore(Protocol):
    def install_feed_format(self, feed_format: FeedFormat) -> None: ...

    async def read_batch(self, query: Query, *, after_sequence: int, limit: int) -> list[Message]:
        """Matching messages with sequence > after_sequence, ascending, at most `limit`."""
        ...

    def subscribe(self, query: Query) -> LiveSubscription: ...

    async def get(self, key: str) -> Message: ...

    async def latest_by_author(self, author: str) -> Message | None: ...

    async def create(
            self,
            *,
            keys: FeedKeys,
            content: dict[str, Any],
            feed_format: str,
            payload: Message | None = None,
            private: bool = False,
    ) -> Message: ...


class SubfeedResolver(Protocol):
    """Find-or-create of derived feeds ("metafeeds")."""

    async def find_or_create(
            self,
            *,
            purpose: str,
            feed_format: str,
            metadata: dict[str, str],
    ) -> IndexFeedInfo: ...
