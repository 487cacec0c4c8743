# src/index_feeds/engine/cancel.py

from __future__ import annotations

from ..core.errors import PipelineCancelled


class CancelToken:
    """Set once by stop(); checked by the pipeline before every read, wait and write."""

    __slots__ = ("_cancelled", "_reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "stopped") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise PipelineCancelled(self._reason)
