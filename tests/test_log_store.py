# tests/test_log_store.py

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from index_feeds.core.errors import FeedFormatError, MessageNotFound
from index_feeds.core.models import INDEX_FEED_FORMAT, AppendRequest, index_record_content
from index_feeds.core.query import parse
from index_feeds.storage.formats import IndexedV1Format
from index_feeds.storage.keys import generate_keys
from index_feeds.storage.log_store import LogStore

from .fakes import SlowIndexLogStore, post, wait_until


@pytest.mark.asyncio
async def test_sequences_are_per_author_and_linked(log, keys) -> None:
    other = generate_keys()

    m1 = await post(log, keys, "post", "one")
    m2 = await post(log, keys, "vote")
    o1 = await post(log, other, "post")

    assert (m1.sequence, m2.sequence, o1.sequence) == (1, 2, 1)
    assert m1.previous is None
    assert m2.previous == m1.key
    assert m1.key != m2.key and m1.key.startswith("%")
    assert m1.signature.endswith(".sig." + keys.curve)

    assert (await log.get(m2.key)) == m2
    assert (await log.latest_by_author(keys.id)) == m2
    assert await log.latest_by_author("@nobody.hmac-sha256") is None
    assert log.count_messages() == 3
    assert log.count_messages(author=keys.id) == 2


@pytest.mark.asyncio
async def test_read_batch_filters_and_paginates(log, keys) -> None:
    posts = []
    for i in range(5):
        posts.append(await post(log, keys, "post", str(i)))
        await post(log, keys, "vote")
    await post(log, keys, "post", "secret", private=True)

    q = parse({"author": keys.id, "type": "post", "private": False})
    first = await log.read_batch(q, after_sequence=0, limit=2)
    assert [m.key for m in first] == [posts[0].key, posts[1].key]

    rest = await log.read_batch(q, after_sequence=first[-1].sequence, limit=10)
    assert [m.key for m in rest] == [p.key for p in posts[2:]]

    private_q = parse({"author": keys.id, "private": True})
    private = await log.read_batch(private_q, after_sequence=0, limit=10)
    assert [m.content["text"] for m in private] == ["secret"]


@pytest.mark.asyncio
async def test_get_missing_and_unknown_format(log, keys) -> None:
    with pytest.raises(MessageNotFound):
        await log.get("%missing.sha256")

    with pytest.raises(FeedFormatError):
        await log.create(keys=keys, content={"type": "post"}, feed_format="nope")

    with pytest.raises(FeedFormatError):
        await log.create(keys=keys, content={"text": "no type"})


@pytest.mark.asyncio
async def test_indexed_v1_only_accepts_index_records(log, keys) -> None:
    log.install_feed_format(IndexedV1Format())
    source = await post(log, keys, "post")
    index_keys = generate_keys()

    with pytest.raises(FeedFormatError):
        await log.create(keys=index_keys, content={"type": "post"}, feed_format=INDEX_FEED_FORMAT, payload=source)

    with pytest.raises(FeedFormatError):
        await log.create(keys=index_keys, content=index_record_content("%other.sha256"), feed_format=INDEX_FEED_FORMAT, payload=source)

    with pytest.raises(FeedFormatError):
        await log.create(keys=index_keys, content=index_record_content(source.key), feed_format=INDEX_FEED_FORMAT)

    rec = await log.create(
        keys=index_keys, content=index_record_content(source.key), feed_format=INDEX_FEED_FORMAT, payload=source
    )
    assert rec.feed_format == INDEX_FEED_FORMAT
    assert rec.content == {"type": "metafeed/index", "indexed": source.key}
    assert rec.sequence == 1


@pytest.mark.asyncio
async def test_subscription_delivers_only_new_matching_messages(log, keys) -> None:
    await post(log, keys, "post", "before")
    q = parse({"author": keys.id, "type": "post", "private": False})

    sub = log.subscribe(q)
    it = aiter(sub)
    try:
        pending = asyncio.ensure_future(anext(it))
        await asyncio.sleep(0.02)
        assert not pending.done()

        await post(log, keys, "vote")
        a = await post(log, keys, "post", "after-1")
        b = await post(log, keys, "post", "after-2")

        assert (await asyncio.wait_for(pending, 1.0)).key == a.key
        assert (await asyncio.wait_for(anext(it), 1.0)).key == b.key
    finally:
        sub.close()
        await it.aclose()


def test_reopen_keeps_messages(tmp_path: Path, keys) -> None:
    db = tmp_path / "reopen.sqlite3"

    async def write() -> None:
        await post(LogStore(db), keys, "post", "persisted")

    asyncio.run(write())

    again = LogStore(db)
    assert again.count_messages(author=keys.id) == 1


def test_index_envelope_without_payload_is_rejected(keys) -> None:
    request = AppendRequest(
        keys=keys,
        content=index_record_content("%missing.sha256"),
        sequence=1,
        previous=None,
        timestamp=0.0,
    )
    with pytest.raises(FeedFormatError, match="requires the indexed message as payload"):
        IndexedV1Format().envelope(request)


@pytest.mark.asyncio
async def test_latest_by_author_waits_for_an_in_flight_append(tmp_path: Path, keys) -> None:
    slow = SlowIndexLogStore(tmp_path / "slow.sqlite3", delay=0.2)
    slow.install_feed_format(IndexedV1Format())
    source = await post(slow, keys, "post")
    feed_keys = generate_keys()

    append = asyncio.ensure_future(
        slow.create(
            keys=feed_keys,
            content=index_record_content(source.key),
            feed_format=INDEX_FEED_FORMAT,
            payload=source,
        )
    )
    await wait_until(lambda: slow.index_appends_started == 1)
    append.cancel()

    latest = await slow.latest_by_author(feed_keys.id)
    assert latest is not None and latest.sequence == 1
    assert append.cancelled()
