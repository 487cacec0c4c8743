# src/index_feeds/core/query.py

from __future__ import annotations

"""
QL0 queries.

A QL0 query selects messages of one author, optionally of one content type,
either public or private:

    {"author": "@...", "type": "post", "private": false}

The canonical form (QueryID) is compact JSON with sorted keys and no `type`
key when the type is unset, so semantically equal queries serialize to the
same bytes no matter how they were written.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from .errors import InvalidQuery
from .models import Message

_FIELDS = frozenset({"author", "type", "private"})


@dataclass(frozen=True, slots=True)
class Query:
    author: str
    private: bool
    type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"author": self.author, "private": self.private}
        if self.type is not None:
            out["type"] = self.type
        return out

    def matches(self, message: Message) -> bool:
        if message.author != self.author:
            return False
        if bool(message.private) != self.private:
            return False
        if self.type is not None and message.type != self.type:
            return False
        return True


QueryInput = Union[Query, Mapping[str, Any], str]


def _as_mapping(query: QueryInput) -> Mapping[str, Any]:
    if isinstance(query, Query):
        return query.to_dict()
    if isinstance(query, str):
        try:
            data = json.loads(query)
        except ValueError as e:
            raise InvalidQuery(f"query is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidQuery("query must be a JSON object")
        return data
    if isinstance(query, Mapping):
        return query
    raise InvalidQuery(f"unsupported query input: {type(query).__name__}")


def validate(query: QueryInput) -> None:
    """Raise InvalidQuery unless `query` is a well-formed QL0 query."""
    data = _as_mapping(query)

    unknown = set(data) - _FIELDS
    if unknown:
        raise InvalidQuery(f"unknown query fields: {', '.join(sorted(unknown))}")

    author = data.get("author")
    if not isinstance(author, str) or not author.startswith("@"):
        raise InvalidQuery("query.author must be a feed id string")

    if "private" not in data or not isinstance(data["private"], bool):
        raise InvalidQuery("query.private must be a boolean")

    qtype = data.get("type")
    if qtype is not None and (not isinstance(qtype, str) or not qtype.strip()):
        raise InvalidQuery("query.type must be a non-empty string")


def parse(query: QueryInput) -> Query:
    validate(query)
    if isinstance(query, Query):
        return query
    data = _as_mapping(query)
    return Query(author=data["author"], private=data["private"], type=data.get("type"))


def stringify(query: Query) -> str:
    return json.dumps(query.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canonicalize(query: QueryInput) -> str:
    """QueryID of `query`: the sole key used for task uniqueness."""
    return stringify(parse(query))


def complete_query(partial: Mapping[str, Any], author: str) -> Query:
    """Fill in the author of a partial query (autostart config omits it)."""
    if not isinstance(partial, Mapping):
        raise InvalidQuery("partial query must be an object")
    return parse({**partial, "author": author})
