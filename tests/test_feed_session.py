"""Tests for the feed session manager, driven by a scripted aggregator."""

import asyncio
import json

import pytest

from topiq.models.content import SourceKind
from topiq.pipeline.feed_session import FeedSessionManager, FeedStatus
from topiq.services.bookmark_service import BookmarkService
from topiq.services.cache_service import KEY_FEED, MemoryKeyValueStore
from topiq.utils.error_monitoring import BatchTotalFailure


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def persisted_feed(articles, refreshed_at):
    return json.dumps({
        "saved_at": refreshed_at,
        "refreshed_at": refreshed_at,
        "items": [a.to_dict() for a in articles],
    })


def ids(articles):
    return [a.id for a in articles]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory(feed_config, memory_store, clock):
    def factory(aggregator, store=None, bookmarks=None, config=None):
        return FeedSessionManager(
            aggregator,
            store if store is not None else memory_store,
            config or feed_config,
            bookmarks=bookmarks,
            clock=clock,
        )
    return factory


class TestStart:

    @pytest.mark.asyncio
    async def test_first_start_fetches_and_persists(self, session_factory, fake_aggregator_cls, make_articles, memory_store):
        batch = make_articles(range(5))
        aggregator = fake_aggregator_cls([batch])
        session = session_factory(aggregator)

        items = await session.start()

        assert ids(items) == ids(batch)
        assert session.status == FeedStatus.READY
        assert session.state.seen_ids == set(ids(batch))
        assert aggregator.calls[0]["counts"] == {SourceKind.ENCYCLOPEDIA: 5}
        assert aggregator.calls[0]["strict"] is True
        stored = json.loads(memory_store.data[KEY_FEED])
        assert [item["id"] for item in stored["items"]] == ids(batch)

    @pytest.mark.asyncio
    async def test_fresh_persisted_feed_is_used_without_fetching(self, session_factory, fake_aggregator_cls, make_articles, memory_store, clock):
        cached = make_articles(range(6))
        memory_store.data[KEY_FEED] = persisted_feed(cached, clock.now - 60)
        aggregator = fake_aggregator_cls()
        session = session_factory(aggregator)

        items = await session.start()

        assert ids(items) == ids(cached)
        assert aggregator.calls == []
        assert session.status == FeedStatus.READY

    @pytest.mark.asyncio
    async def test_stale_persisted_feed_is_replaced(self, session_factory, fake_aggregator_cls, make_articles, memory_store, clock, feed_config):
        cached = make_articles(range(6))
        memory_store.data[KEY_FEED] = persisted_feed(cached, clock.now - feed_config.refresh_interval_seconds - 1)
        fresh = make_articles(range(100, 105))
        session = session_factory(fake_aggregator_cls([fresh]))

        items = await session.start()

        assert ids(items) == ids(fresh)

    @pytest.mark.asyncio
    async def test_insufficient_cache_is_topped_up(self, session_factory, fake_aggregator_cls, make_articles, memory_store, clock):
        cached = make_articles(range(3))
        memory_store.data[KEY_FEED] = persisted_feed(cached, clock.now - 60)
        fresh = make_articles(range(100, 102))
        aggregator = fake_aggregator_cls([fresh])
        session = session_factory(aggregator)

        items = await session.start()

        assert ids(items) == ids(cached) + ids(fresh)
        assert aggregator.calls[0]["counts"] == {SourceKind.ENCYCLOPEDIA: 2}
        assert aggregator.calls[0]["exclude_ids"] == set(ids(cached))

    @pytest.mark.asyncio
    async def test_cache_is_used_when_fetch_fails(self, session_factory, fake_aggregator_cls, make_articles, memory_store, clock, feed_config, batch_failure):
        cached = make_articles(range(4))
        memory_store.data[KEY_FEED] = persisted_feed(cached, clock.now - feed_config.refresh_interval_seconds - 1)
        session = session_factory(fake_aggregator_cls([batch_failure]))

        items = await session.start()

        assert ids(items) == ids(cached)
        assert session.status == FeedStatus.READY

    @pytest.mark.asyncio
    async def test_first_load_failure_enters_error_state(self, session_factory, fake_aggregator_cls, make_articles, batch_failure):
        fresh = make_articles(range(5))
        session = session_factory(fake_aggregator_cls([batch_failure, fresh]))

        with pytest.raises(BatchTotalFailure):
            await session.start()

        assert session.status == FeedStatus.ERROR
        assert session.state.error
        assert session.get_items() == []

        items = await session.retry()

        assert ids(items) == ids(fresh)
        assert session.status == FeedStatus.READY
        assert session.state.error is None

    @pytest.mark.asyncio
    async def test_corrupt_persisted_feed_is_ignored(self, session_factory, fake_aggregator_cls, make_articles, memory_store):
        memory_store.data[KEY_FEED] = "{not json"
        fresh = make_articles(range(5))
        session = session_factory(fake_aggregator_cls([fresh]))

        assert ids(await session.start()) == ids(fresh)

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_fatal(self, session_factory, fake_aggregator_cls, make_articles, failing_store):
        fresh = make_articles(range(5))
        session = session_factory(fake_aggregator_cls([fresh]), store=failing_store)

        items = await session.start()
        added = await session.load_more()

        assert ids(items) == ids(fresh)
        assert session.status == FeedStatus.READY
        assert added == 0


class TestLoadMore:

    @pytest.mark.asyncio
    async def test_appends_only_unseen_articles(self, session_factory, fake_aggregator_cls, make_articles):
        first = make_articles(range(7))
        # 10 upstream candidates, 7 of which the session has already shown
        upstream = make_articles(range(10))
        session = session_factory(fake_aggregator_cls([first, upstream]))
        await session.start()
        before = session.get_items()

        added = await session.load_more(10)

        assert added == 3
        items = session.get_items()
        assert items[:len(before)] == before
        assert ids(items[len(before):]) == ids(upstream[7:])

    @pytest.mark.asyncio
    async def test_seen_ids_are_excluded_upstream(self, session_factory, fake_aggregator_cls, make_articles):
        aggregator = fake_aggregator_cls([make_articles(range(5)), make_articles(range(5, 10))])
        session = session_factory(aggregator)
        await session.start()

        await session.load_more()

        assert aggregator.calls[1]["exclude_ids"] == set(ids(make_articles(range(5))))
        assert aggregator.calls[1]["counts"] == {SourceKind.ENCYCLOPEDIA: 5}

    @pytest.mark.asyncio
    async def test_no_duplicates_across_many_loads(self, session_factory, fake_aggregator_cls, make_articles):
        windows = [make_articles(range(start, start + 8)) for start in range(0, 40, 4)]
        session = session_factory(fake_aggregator_cls(windows))
        await session.start()

        for _ in range(len(windows) - 1):
            before = session.get_items()
            await session.load_more()
            after = session.get_items()
            assert after[:len(before)] == before

        all_ids = ids(session.get_items())
        assert len(all_ids) == len(set(all_ids))

    @pytest.mark.asyncio
    async def test_empty_after_dedup_retries_with_alternate_topic(self, session_factory, fake_aggregator_cls, make_articles, feed_config):
        first = make_articles(range(5))
        aggregator = fake_aggregator_cls([first, first, make_articles(range(5, 8))])
        session = session_factory(aggregator)
        await session.start()

        added = await session.load_more()

        assert added == 3
        assert aggregator.calls[1]["query"] is None
        assert aggregator.calls[2]["query"] in feed_config.topics

    @pytest.mark.asyncio
    async def test_empty_retry_is_a_quiet_no_op(self, session_factory, fake_aggregator_cls, make_articles):
        first = make_articles(range(5))
        aggregator = fake_aggregator_cls([first, first, first])
        session = session_factory(aggregator)
        await session.start()

        added = await session.load_more()

        assert added == 0
        assert len(aggregator.calls) == 3
        assert session.status == FeedStatus.READY

    @pytest.mark.asyncio
    async def test_background_failure_is_swallowed(self, session_factory, fake_aggregator_cls, make_articles, batch_failure):
        session = session_factory(fake_aggregator_cls([make_articles(range(5)), batch_failure]))
        await session.start()

        added = await session.load_more()

        assert added == 0
        assert session.status == FeedStatus.READY
        assert session.state.is_background_loading is False
        assert len(session.get_items()) == 5

    @pytest.mark.asyncio
    async def test_single_flight(self, session_factory, fake_aggregator_cls, make_articles):
        async def slow_batch(counts, query, exclude_ids):
            await asyncio.sleep(0.01)
            return make_articles(range(5, 10))

        aggregator = fake_aggregator_cls([make_articles(range(5)), slow_batch])
        session = session_factory(aggregator)
        await session.start()

        results = await asyncio.gather(session.load_more(), session.load_more())

        assert sorted(results) == [0, 5]
        assert len(aggregator.calls) == 2

    @pytest.mark.asyncio
    async def test_ignored_before_start(self, session_factory, fake_aggregator_cls):
        aggregator = fake_aggregator_cls()
        session = session_factory(aggregator)

        assert await session.load_more() == 0
        assert aggregator.calls == []

    @pytest.mark.asyncio
    async def test_superseded_load_is_discarded(self, session_factory, fake_aggregator_cls, make_articles):
        release = asyncio.Event()

        async def blocked_batch(counts, query, exclude_ids):
            await release.wait()
            return make_articles(range(50, 55))

        refreshed = make_articles(range(100, 105))
        session = session_factory(fake_aggregator_cls([make_articles(range(5)), blocked_batch, refreshed]))
        await session.start()

        pending = asyncio.ensure_future(session.load_more())
        await asyncio.sleep(0)
        await session.refresh()
        release.set()
        added = await pending

        assert added == 0
        assert ids(session.get_items()) == ids(refreshed)
        assert session.status == FeedStatus.READY

    @pytest.mark.asyncio
    async def test_initial_load_overtaken_by_refresh_is_discarded(self, session_factory, fake_aggregator_cls, make_articles):
        release = asyncio.Event()

        async def blocked_batch(counts, query, exclude_ids):
            await release.wait()
            return make_articles(range(50, 55))

        refreshed = make_articles(range(100, 105))
        session = session_factory(fake_aggregator_cls([blocked_batch, refreshed]))

        pending = asyncio.ensure_future(session.start())
        await asyncio.sleep(0)
        await session.refresh()
        release.set()
        items = await pending

        assert ids(items) == ids(refreshed)
        assert ids(session.get_items()) == ids(refreshed)
        assert session.state.seen_ids == set(ids(refreshed))
        assert session.status == FeedStatus.READY

    @pytest.mark.asyncio
    async def test_persisted_feed_is_trimmed(self, session_factory, fake_aggregator_cls, make_articles, memory_store, feed_config):
        feed_config.max_cached_articles = 6
        session = session_factory(fake_aggregator_cls([make_articles(range(5)), make_articles(range(5, 10))]))
        await session.start()
        await session.load_more()

        stored = json.loads(memory_store.data[KEY_FEED])

        assert [item["id"] for item in stored["items"]] == ids(session.get_items()[-6:])


class TestRefresh:

    @pytest.mark.asyncio
    async def test_refresh_replaces_items_and_seen_ids(self, session_factory, fake_aggregator_cls, make_articles):
        aggregator = fake_aggregator_cls([make_articles(range(5)), make_articles(range(3, 8))])
        session = session_factory(aggregator)
        await session.start()

        items = await session.refresh()

        assert ids(items) == ids(make_articles(range(3, 8)))
        assert session.state.seen_ids == set(ids(items))
        assert session.state.epoch == 1
        # Previously shown articles are allowed back in after a refresh
        assert aggregator.calls[1]["exclude_ids"] is None

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_previous_items(self, session_factory, fake_aggregator_cls, make_articles, batch_failure):
        first = make_articles(range(5))
        session = session_factory(fake_aggregator_cls([first, batch_failure]))
        await session.start()

        with pytest.raises(BatchTotalFailure):
            await session.refresh()

        assert ids(session.get_items()) == ids(first)
        assert session.status == FeedStatus.READY
        assert session.state.error

    @pytest.mark.asyncio
    async def test_clear_drops_feed_and_persisted_copy(self, session_factory, fake_aggregator_cls, make_articles, memory_store):
        session = session_factory(fake_aggregator_cls([make_articles(range(5))]))
        await session.start()

        await session.clear()

        assert session.get_items() == []
        assert session.state.seen_ids == set()
        assert session.status == FeedStatus.UNINITIALIZED
        assert KEY_FEED not in memory_store.data


class TestTopics:

    @pytest.mark.asyncio
    async def test_searchable_topic_is_added(self, session_factory, fake_aggregator_cls, feed_config):
        aggregator = fake_aggregator_cls(valid_topics={"Volcanology"})
        session = session_factory(aggregator)

        assert await session.add_topic("  Volcanology ")
        assert feed_config.topics[-1] == "Volcanology"
        assert aggregator.validated == ["Volcanology"]

    @pytest.mark.asyncio
    async def test_unsearchable_topic_is_rejected(self, session_factory, fake_aggregator_cls, feed_config):
        before = list(feed_config.topics)
        session = session_factory(fake_aggregator_cls())

        assert not await session.add_topic("qwxzzy")
        assert not await session.add_topic("   ")
        assert feed_config.topics == before

    @pytest.mark.asyncio
    async def test_known_topic_is_not_revalidated(self, session_factory, fake_aggregator_cls, feed_config):
        feed_config.topics = ["Astronomy"]
        aggregator = fake_aggregator_cls()
        session = session_factory(aggregator)

        assert await session.add_topic("astronomy")
        assert feed_config.topics == ["Astronomy"]
        assert aggregator.validated == []


class TestBackgroundTriggers:

    @pytest.mark.asyncio
    async def test_near_end_position_schedules_load(self, session_factory, fake_aggregator_cls, make_articles):
        session = session_factory(fake_aggregator_cls([make_articles(range(5)), make_articles(range(5, 10))]))
        await session.start()

        assert session.notify_position(0) is None
        task = session.notify_position(3)

        assert task is not None
        assert await task == 5
        assert len(session.get_items()) == 10

    @pytest.mark.asyncio
    async def test_position_marks_article_viewed(self, session_factory, fake_aggregator_cls, make_articles, memory_store):
        bookmarks = BookmarkService(memory_store)
        session = session_factory(fake_aggregator_cls([make_articles(range(5))]), bookmarks=bookmarks)
        await session.start()

        session.notify_position(1)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        viewed = await bookmarks.get_viewed_articles()
        assert ids(viewed) == [session.get_items()[1].id]
        await session.close()

    @pytest.mark.asyncio
    async def test_polling_loads_in_background(self, session_factory, fake_aggregator_cls, make_articles):
        batches = [make_articles(range(start, start + 5)) for start in range(0, 50, 5)]
        aggregator = fake_aggregator_cls(batches)
        session = session_factory(aggregator)
        await session.start()

        session.start_polling()
        await asyncio.sleep(0.1)
        session.stop_polling()

        assert len(aggregator.calls) > 1
        assert len(session.get_items()) > 5
        await session.close()

    @pytest.mark.asyncio
    async def test_like_observer_updates_session(self, session_factory, fake_aggregator_cls, make_articles, memory_store):
        bookmarks = BookmarkService(memory_store)
        session = session_factory(fake_aggregator_cls([make_articles(range(5))]), bookmarks=bookmarks)
        await session.start()
        article = session.get_items()[0]

        await bookmarks.toggle_like(article)
        assert session.is_liked(article.id)

        await bookmarks.toggle_like(article)
        assert not session.is_liked(article.id)

        await session.close()
        await bookmarks.toggle_like(article)
        assert not session.is_liked(article.id)


def test_new_session_state(feed_config, fake_aggregator_cls):
    session = FeedSessionManager(fake_aggregator_cls(), MemoryKeyValueStore(), feed_config)

    assert session.status == FeedStatus.UNINITIALIZED
    assert session.get_items() == []
    assert session.state.is_background_loading is False
