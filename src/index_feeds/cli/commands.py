# src/index_feeds/cli/commands.py

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from concurrent.futures import TimeoutError as FutureTimeout

from ..core.errors import IndexFeedsError, InvalidQuery
from ..core.models import INDEX_PURPOSE, indexed_key_of
from ..core.query import Query, canonicalize, complete_query
from ..core.state import AppState

CommandHandler = Callable[[AppState, list[str]], str]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the console connector (/help, /start, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(self, state: AppState, line: str) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            return handler(state, args)
        except InvalidQuery as e:
            return f"Invalid query: {e}"
        except IndexFeedsError as e:
            logger.warning("/%s failed: %s", name, e)
            return f"Failed: {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _query_from_args(state: AppState, args: list[str]) -> Query:
    """
    /start post            -> {"type": "post", "private": false}
    /start post --private  -> {"type": "post", "private": true}
    /start {"private": true}
    The author is always the local identity unless given explicitly in JSON.
    """
    if not args:
        raise InvalidQuery("expected a type or a JSON query")

    raw = " ".join(args)
    if raw.lstrip().startswith("{"):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise InvalidQuery(f"query is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidQuery("query must be a JSON object")
        author = data.pop("author", state.local_id)
        return complete_query(data, author)

    private = "--private" in args
    rest = [a for a in args if a != "--private"]
    if len(rest) != 1:
        raise InvalidQuery("expected exactly one type")
    return complete_query({"type": rest[0], "private": private}, state.local_id)


def _runner(state: AppState):
    if state.runner is None:
        raise IndexFeedsError("engine is not running")
    return state.runner


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_whoami(state: AppState, args: list[str]) -> str:
    return f"Local identity: {state.local_id}"


def cmd_status(state: AppState, args: list[str]) -> str:
    rows = state.engine.status()
    total = state.log.count_messages(author=state.local_id)
    lines = [f"Source log: {total} message(s) by {state.local_id}"]
    if not rows:
        lines.append("No index tasks running.")
        return "\n".join(lines)
    lines.append("Index tasks:")
    for r in rows:
        drained = "drained" if r["drained"] else "catching up"
        lines.append(
            f"  {r['query']} -> {r['feed_id']} [{r['phase']}, {drained}] "
            f"cursor={r['cursor']} written={r['written']}"
        )
    return "\n".join(lines)


def _post(state: AppState, args: list[str], *, private: bool) -> str:
    if not args:
        return "Usage: /post <type> [text...]"
    content = {"type": args[0], "text": " ".join(args[1:])}
    msg = _runner(state).call(state.log.create(keys=state.keys, content=content, private=private))
    vis = "private" if private else "public"
    return f"Posted {vis} {msg.type} seq={msg.sequence} key={msg.key}"


def cmd_post(state: AppState, args: list[str]) -> str:
    return _post(state, args, private=False)


def cmd_private(state: AppState, args: list[str]) -> str:
    return _post(state, args, private=True)


def cmd_start(state: AppState, args: list[str]) -> str:
    query = _query_from_args(state, args)
    feed = _runner(state).call(state.engine.start(query))
    return f"Indexing {canonicalize(query)} into {feed.feed_id}"


def cmd_stop(state: AppState, args: list[str]) -> str:
    query = _query_from_args(state, args)
    if not state.engine.is_running(query):
        return f"Not running: {canonicalize(query)}"
    _runner(state).call(_stop(state, query))
    return f"Stopped {canonicalize(query)}"


async def _stop(state: AppState, query: Query) -> None:
    # stop() touches the registry, so it runs on the engine loop.
    state.engine.stop(query)


def cmd_wait(state: AppState, args: list[str]) -> str:
    """
    /wait <type|json> [seconds]  -> block until the backlog of the query is indexed
    """
    seconds = 10.0
    if args and args[-1].replace(".", "", 1).isdigit():
        seconds = float(args[-1])
        args = args[:-1]
    query = _query_from_args(state, args)
    try:
        _runner(state).call(asyncio.wait_for(state.engine.done_old(query), timeout=seconds), timeout=seconds + 1)
    except (asyncio.TimeoutError, FutureTimeout):
        return f"Backlog of {canonicalize(query)} not drained after {seconds:g}s."
    return f"Backlog of {canonicalize(query)} is indexed."


def cmd_index(state: AppState, args: list[str]) -> str:
    """
    /index <type|json>  -> show the index feed of a query and its last pointers
    """
    query = _query_from_args(state, args)
    query_id = canonicalize(query)
    feed = next(
        (f for f in state.metafeeds.list_subfeeds(INDEX_PURPOSE) if f.query_id == query_id),
        None,
    )
    if feed is None:
        return f"No index feed for {query_id} (use /start first)."

    count = state.log.count_messages(author=feed.feed_id)
    records = _runner(state).call(state.log.list_by_author(feed.feed_id, limit=10, descending=True))
    lines = [f"Index feed {feed.feed_id}: {count} record(s)"]
    for rec in reversed(records):
        lines.append(f"  #{rec.sequence} -> {indexed_key_of(rec)}")
    return "\n".join(lines)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("whoami", cmd_whoami, help_text="Show the local identity.")
registry.register("status", cmd_status, help_text="Show running index tasks.")
registry.register("post", cmd_post, help_text="Append a public message: /post <type> [text...].")
registry.register("private", cmd_private, help_text="Append a private message: /private <type> [text...].")
registry.register("start", cmd_start, help_text="Start indexing: /start <type> [--private] | /start <json>.")
registry.register("stop", cmd_stop, help_text="Stop indexing: /stop <type> [--private] | /stop <json>.")
registry.register("wait", cmd_wait, help_text="Wait for the backlog: /wait <type> [seconds].")
registry.register("index", cmd_index, help_text="Show an index feed: /index <type> [--private].")
