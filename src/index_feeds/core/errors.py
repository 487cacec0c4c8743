# src/index_feeds/core/errors.py

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import IndexFeedInfo


class IndexFeedsError(Exception):
    """Base class for every error raised by index-feeds."""


class InvalidQuery(IndexFeedsError, ValueError):
    """Query does not conform to QL0 or is not authored by the local identity."""


class SubfeedResolutionError(IndexFeedsError):
    """The subfeed registry could not find or create the index feed."""


class CursorResolutionError(IndexFeedsError):
    """
    The last index record of a feed could not be dereferenced.

    Carries the index feed so callers of start() still learn its identity.
    """

    def __init__(self, message: str, *, feed: IndexFeedInfo | None = None) -> None:
        super().__init__(message)
        self.feed = feed


class FeedFormatError(IndexFeedsError):
    """Unknown feed format, or content rejected by the format."""


class MessageNotFound(IndexFeedsError, KeyError):
    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"message not found: {self.key}"


class MissingCollaborator(IndexFeedsError, RuntimeError):
    """The engine was constructed without a required collaborator."""


class PipelineCancelled(IndexFeedsError):
    """Raised at a suspension point after the owning task was stopped."""
