# tests/test_engine.py

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

import pytest

from index_feeds.core.errors import CursorResolutionError, IndexFeedsError, InvalidQuery, MissingCollaborator
from index_feeds.core.models import INDEX_FEED_FORMAT, index_record_content, indexed_key_of
from index_feeds.core.query import canonicalize
from index_feeds.engine.cursor import resolve_cursor
from index_feeds.engine.registry import TaskPhase
from index_feeds.engine.service import IndexFeeds
from index_feeds.storage.metafeeds import MetafeedRegistry

from .fakes import FlakyLog, SlowIndexLogStore, post, wait_until


def _posts_query(keys, private: bool = False) -> dict:
    return {"author": keys.id, "type": "post", "private": private}


async def _indexed_keys(log, feed) -> list[str]:
    return [indexed_key_of(r) for r in await log.list_by_author(feed.feed_id, limit=1000)]


@pytest.mark.asyncio
async def test_backlog_live_stop_and_resume(engine, log, keys) -> None:
    query = _posts_query(keys)
    posts = [await post(log, keys, "post", f"p{i}") for i in range(1, 6)]

    feed = await engine.start(query)
    assert feed.purpose == "index"
    assert feed.feed_format == INDEX_FEED_FORMAT
    assert feed.metadata == {"querylang": "ssb-ql-0", "query": canonicalize(query)}

    records_at_drain: list[int] = []
    engine.on_done_old(query, lambda: records_at_drain.append(log.count_messages(author=feed.feed_id)))
    await asyncio.wait_for(engine.done_old(query), 3.0)

    assert records_at_drain == [5]
    assert await _indexed_keys(log, feed) == [p.key for p in posts]

    # Live phase
    p6 = await post(log, keys, "post", "p6")
    await wait_until(lambda: log.count_messages(author=feed.feed_id) == 6)
    assert (await _indexed_keys(log, feed))[-1] == p6.key
    assert engine.registry.get(canonicalize(query)).phase == TaskPhase.LIVE

    # Stopped: nothing new gets indexed
    engine.stop(query)
    assert not engine.is_running(query)
    p7 = await post(log, keys, "post", "p7")
    await asyncio.sleep(0.1)
    assert log.count_messages(author=feed.feed_id) == 6

    # Restart resumes from the last written record
    assert await resolve_cursor(log, feed) == p6.sequence == 6
    again = await engine.start(query)
    assert again.feed_id == feed.feed_id
    await wait_until(lambda: log.count_messages(author=feed.feed_id) == 7)

    keys_indexed = await _indexed_keys(log, feed)
    assert keys_indexed == [p.key for p in posts] + [p6.key, p7.key]
    assert len(set(keys_indexed)) == 7


@pytest.mark.asyncio
async def test_done_old_after_drain_fires_immediately(engine, log, keys) -> None:
    query = _posts_query(keys)
    await post(log, keys, "post")
    await engine.start(query)
    await asyncio.wait_for(engine.done_old(query), 3.0)

    calls: list[tuple] = []
    engine.on_done_old(query, lambda *args: calls.append(args))
    assert calls == [()]


@pytest.mark.asyncio
async def test_start_twice_keeps_a_single_task(engine, log, keys, caplog) -> None:
    query = _posts_query(keys)
    await post(log, keys, "post")

    with caplog.at_level(logging.WARNING, logger="index_feeds.engine.registry"):
        a, b = await asyncio.gather(engine.start(query), engine.start(dict(reversed(query.items()))))

    assert a.feed_id == b.feed_id
    assert len(engine.registry) == 1
    assert "because there already is one" in caplog.text

    await asyncio.wait_for(engine.done_old(query), 3.0)
    assert log.count_messages(author=a.feed_id) == 1


@pytest.mark.asyncio
async def test_queries_are_indexed_independently(engine, log, keys) -> None:
    public_post = await post(log, keys, "post", "hello")
    private_post = await post(log, keys, "post", "psst", private=True)
    await post(log, keys, "vote")

    pub = await engine.start(_posts_query(keys))
    priv = await engine.start(_posts_query(keys, private=True))
    assert pub.feed_id != priv.feed_id

    await asyncio.wait_for(engine.done_old(_posts_query(keys)), 3.0)
    await asyncio.wait_for(engine.done_old(_posts_query(keys, private=True)), 3.0)

    assert await _indexed_keys(log, pub) == [public_post.key]
    assert await _indexed_keys(log, priv) == [private_post.key]
    assert len(engine.status()) == 2


@pytest.mark.asyncio
async def test_foreign_author_is_rejected_without_side_effects(engine, metafeeds) -> None:
    with pytest.raises(InvalidQuery, match="Can only index our own messages"):
        await engine.start({"author": "@someone-else.hmac-sha256", "type": "post", "private": False})

    with pytest.raises(InvalidQuery):
        await engine.start({"author": engine.local_id, "type": "post"})

    assert metafeeds.list_subfeeds() == []
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_stop_of_unknown_or_invalid_query_is_a_logged_noop(engine, keys, caplog) -> None:
    with caplog.at_level(logging.WARNING):
        engine.stop(_posts_query(keys))
        engine.stop({"nonsense": True})

    assert "wasnt running anyway" in caplog.text
    assert "stop() ignored" in caplog.text


@pytest.mark.asyncio
async def test_pipeline_failure_deregisters_and_restart_resumes(log, metafeeds, keys, caplog) -> None:
    posts = [await post(log, keys, "post", str(i)) for i in range(4)]
    query = _posts_query(keys)

    flaky = FlakyLog(log, fail_after=2)
    broken = IndexFeeds(keys.id, flaky, metafeeds, batch_size=2)
    with caplog.at_level(logging.WARNING, logger="index_feeds.engine.registry"):
        feed = await broken.start(query)
        await wait_until(lambda: not broken.is_running(query))
    assert "failed" in caplog.text
    assert log.count_messages(author=feed.feed_id) == 2
    await broken.close()

    healthy = IndexFeeds(keys.id, log, metafeeds, batch_size=2)
    try:
        again = await healthy.start(query)
        assert again.feed_id == feed.feed_id
        await asyncio.wait_for(healthy.done_old(query), 3.0)
        assert await _indexed_keys(log, feed) == [p.key for p in posts]
    finally:
        await healthy.close()


@pytest.mark.asyncio
async def test_unresolvable_cursor_fails_start_and_registers_nothing(engine, log, keys) -> None:
    query = _posts_query(keys)
    source = await post(log, keys, "post")
    feed = await engine._metafeeds.find_or_create(
        purpose="index",
        feed_format=INDEX_FEED_FORMAT,
        metadata={"querylang": "ssb-ql-0", "query": canonicalize(query)},
    )
    ghost = replace(source, key="%ghost.sha256")
    await log.create(keys=feed.keys, content=index_record_content(ghost.key), feed_format=INDEX_FEED_FORMAT, payload=ghost)

    with pytest.raises(CursorResolutionError) as ei:
        await engine.start(query)

    assert ei.value.feed.feed_id == feed.feed_id
    assert not engine.is_running(query)


@pytest.mark.asyncio
async def test_close_stops_every_task(engine, log, keys) -> None:
    await engine.start(_posts_query(keys))
    await engine.start(_posts_query(keys, private=True))
    assert len(engine.registry) == 2

    await engine.close()
    assert len(engine.registry) == 0

    with pytest.raises(IndexFeedsError):
        await engine.start(_posts_query(keys))


@pytest.mark.asyncio
async def test_autostart_completes_partial_queries(engine, log, keys, caplog) -> None:
    await post(log, keys, "post")
    await post(log, keys, "vote")

    with caplog.at_level(logging.ERROR, logger="index_feeds.engine.service"):
        started = await engine.autostart(
            [{"type": "post", "private": False}, {"type": "vote", "private": False}, {"bogus": 1}]
        )

    assert len(started) == 2
    assert engine.is_running(_posts_query(keys))
    assert engine.is_running({"author": keys.id, "type": "vote", "private": False})
    assert "autostart failed" in caplog.text


def test_engine_requires_collaborators(log, metafeeds) -> None:
    with pytest.raises(MissingCollaborator):
        IndexFeeds("@me.hmac-sha256", None, metafeeds)
    with pytest.raises(MissingCollaborator):
        IndexFeeds("@me.hmac-sha256", log, None)


@pytest.mark.asyncio
async def test_restart_during_an_in_flight_index_append_writes_it_once(tmp_path, keys) -> None:
    db_path = tmp_path / "slow.sqlite3"
    slow = SlowIndexLogStore(db_path, delay=0.3)
    feeds = IndexFeeds(keys.id, slow, MetafeedRegistry(db_path, keys))
    query = _posts_query(keys)
    try:
        p1 = await post(slow, keys, "post", "p1")
        feed = await feeds.start(query)
        await wait_until(lambda: slow.index_appends_started == 1)

        # The first append is still running in its worker thread.
        feeds.stop(query)
        await feeds.start(query)
        assert feeds.registry.get(canonicalize(query)).cursor == p1.sequence

        await asyncio.sleep(0.5)
        assert await _indexed_keys(slow, feed) == [p1.key]
        assert slow.index_appends_started == 1
    finally:
        await feeds.close()


@pytest.mark.asyncio
async def test_task_leaves_the_registry_when_its_source_closes(engine, log, keys) -> None:
    query = _posts_query(keys)
    await engine.start(query)
    await asyncio.wait_for(engine.done_old(query), 3.0)

    log.close()
    await wait_until(lambda: not engine.is_running(query))

    await engine.start(query)
    assert engine.is_running(query)
