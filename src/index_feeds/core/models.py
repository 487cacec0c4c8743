# src/index_feeds/core/models.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final

INDEX_PURPOSE: Final[str] = "index"
INDEX_FEED_FORMAT: Final[str] = "indexed-v1"
INDEX_RECORD_TYPE: Final[str] = "metafeed/index"
QUERY_LANG: Final[str] = "ssb-ql-0"


@dataclass(frozen=True, slots=True)
class FeedKeys:
    curve: str
    public: str
    private: str
    id: str

    def to_dict(self) -> dict[str, str]:
        return {"curve": self.curve, "public": self.public, "private": self.private, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeedKeys:
        return cls(
            curve=str(data["curve"]),
            public=str(data["public"]),
            private=str(data["private"]),
            id=str(data["id"]),
        )


@dataclass(frozen=True, slots=True)
class Message:
    """One entry of an append-only feed, as stored in the log."""

    key: str
    author: str
    sequence: int
    timestamp: float
    content: dict[str, Any]
    private: bool = False
    feed_format: str = "classic"
    previous: str | None = None
    signature: str = ""

    @property
    def type(self) -> str | None:
        t = self.content.get("type")
        return t if isinstance(t, str) else None


@dataclass(frozen=True, slots=True)
class IndexFeedInfo:
    """What the subfeed registry reports about an index feed."""

    purpose: str
    feed_id: str
    keys: FeedKeys
    metadata: dict[str, str]
    feed_format: str = INDEX_FEED_FORMAT

    @property
    def query_id(self) -> str:
        return self.metadata.get("query", "")


@dataclass(frozen=True, slots=True)
class Entry:
    """A matching source message flowing through the merged stream."""

    message: Message


@dataclass(frozen=True, slots=True)
class SyncPoint:
    """Marker between the backlog and the live tail of a merged stream."""

    last_sequence: int = 0


MergedItem = Entry | SyncPoint


def index_record_content(indexed_key: str) -> dict[str, str]:
    return {"type": INDEX_RECORD_TYPE, "indexed": indexed_key}


def indexed_key_of(message: Message) -> str | None:
    """Key of the source message an index record points to (None if not a record)."""
    if message.content.get("type") != INDEX_RECORD_TYPE:
        return None
    key = message.content.get("indexed")
    return key if isinstance(key, str) and key else None


@dataclass(slots=True)
class AppendRequest:
    """Everything a feed format needs to encode the next message of a feed."""

    keys: FeedKeys
    content: dict[str, Any]
    sequence: int
    previous: str | None
    timestamp: float
    private: bool = False
    payload: Message | None = None
