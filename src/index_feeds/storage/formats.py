# src/index_feeds/storage/formats.py

from __future__ import annotations

"""
Feed formats.

A format turns an AppendRequest into (key, signature). Both formats here use
the same envelope (canonical JSON of previous/author/sequence/timestamp/content,
HMAC-SHA256 signed with the feed's private key); `indexed-v1` additionally
only accepts index records and binds the indexed message into the signature.
"""

import base64
import hashlib
import hmac
import json
from typing import Any

from ..core.errors import FeedFormatError
from ..core.models import INDEX_FEED_FORMAT, INDEX_RECORD_TYPE, AppendRequest
from .keys import private_bytes


def _canonical(data: dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class ClassicFormat:
    name = "classic"

    def check(self, request: AppendRequest) -> None:
        t = request.content.get("type")
        if not isinstance(t, str) or not t.strip():
            raise FeedFormatError("content.type must be a non-empty string")

    def envelope(self, request: AppendRequest) -> dict[str, Any]:
        return {
            "previous": request.previous,
            "author": request.keys.id,
            "sequence": request.sequence,
            "timestamp": request.timestamp,
            "hash": "sha256",
            "content": request.content,
        }

    def encode(self, request: AppendRequest) -> tuple[str, str]:
        self.check(request)
        try:
            signed = _canonical(self.envelope(request))
        except (TypeError, ValueError) as e:
            raise FeedFormatError(f"content is not JSON-serializable: {e}") from e

        mac = hmac.new(private_bytes(request.keys), signed, hashlib.sha256).digest()
        signature = base64.b64encode(mac).decode("ascii") + ".sig." + request.keys.curve
        digest = hashlib.sha256(signed + signature.encode("ascii")).digest()
        key = "%" + base64.b64encode(digest).decode("ascii") + ".sha256"
        return key, signature


class IndexedV1Format(ClassicFormat):
    """Index records: {"type": "metafeed/index", "indexed": <key>} + the indexed message."""

    name = INDEX_FEED_FORMAT

    def check(self, request: AppendRequest) -> None:
        content = request.content
        if set(content) != {"type", "indexed"} or content.get("type") != INDEX_RECORD_TYPE:
            raise FeedFormatError(f"{self.name} only accepts {INDEX_RECORD_TYPE} records")
        indexed = content.get("indexed")
        if not isinstance(indexed, str) or not indexed:
            raise FeedFormatError("content.indexed must be a message key")
        if request.payload is None:
            raise FeedFormatError(f"{self.name} requires the indexed message as payload")
        if request.payload.key != indexed:
            raise FeedFormatError("payload does not match content.indexed")
        if request.private:
            raise FeedFormatError("index records are always public")

    def envelope(self, request: AppendRequest) -> dict[str, Any]:
        if request.payload is None:
            raise FeedFormatError(f"{self.name} requires the indexed message as payload")
        env = super().envelope(request)
        env["payload"] = request.payload.signature
        return env
