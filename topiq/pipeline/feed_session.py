"""
Feed Session Manager.

Owns the list of articles shown to the user, the seen-id set used for
deduplication, the response cache handed to the adapters and the background
"load more" policy (near-end trigger, periodic polling, single-flight guard).

State machine:

    UNINITIALIZED -> LOADING -> READY <-> BACKGROUND_LOADING
                        |
                        +-> ERROR (first load failed with nothing cached)

`refresh()` always goes back through LOADING and bumps the epoch so that
background loads started before it discard their results.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Set, Tuple

from topiq.config import FeedConfig
from topiq.models.content import Article
from topiq.pipeline.content_aggregator import MultiSourceAggregator
from topiq.services.adapter_factory import SourceAdapterFactory
from topiq.services.bookmark_service import BookmarkService
from topiq.services.cache_service import KEY_FEED, KeyValueStore, TTLCache
from topiq.services.http_client import HttpClient
from topiq.services.podcast_service import PodcastService
from topiq.utils.error_monitoring import BatchTotalFailure, StorageFailure


class FeedStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    BACKGROUND_LOADING = "background_loading"
    ERROR = "error"


@dataclass
class FeedState:
    items: List[Article] = field(default_factory=list)
    seen_ids: Set[int] = field(default_factory=set)
    is_background_loading: bool = False
    status: FeedStatus = FeedStatus.UNINITIALIZED
    epoch: int = 0
    last_refresh_at: Optional[float] = None
    error: Optional[str] = None


class FeedSessionManager:
    """
    One user's infinite feed.

    Consumers only need get_items(), refresh(), load_more() and
    notify_position(); everything else is lifecycle.
    """

    def __init__(
        self,
        aggregator: MultiSourceAggregator,
        store: KeyValueStore,
        config: Optional[FeedConfig] = None,
        bookmarks: Optional[BookmarkService] = None,
        clock: Callable[[], float] = time.time,
        cache: Optional[TTLCache] = None,
        rng: Optional[random.Random] = None,
        podcasts: Optional[PodcastService] = None,
    ):
        self.aggregator = aggregator
        self.store = store
        self.config = config or FeedConfig()
        self.bookmarks = bookmarks
        self.clock = clock
        self.cache = cache or TTLCache(store, clock)
        self.rng = rng or random.Random()
        self.podcasts = podcasts
        self.logger = logging.getLogger(__name__)

        self.state = FeedState()
        self.liked_ids: Set[int] = set()
        self._current_topic: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @classmethod
    def create(cls, config: FeedConfig, store: KeyValueStore, http: HttpClient) -> "FeedSessionManager":
        """Wire adapters, aggregator and bookmarks around one session-owned cache."""
        cache = TTLCache(store)
        adapters = SourceAdapterFactory.create_all(http, cache, config)
        aggregator = MultiSourceAggregator(adapters, config)
        podcasts = PodcastService(http, cache, config)
        return cls(aggregator, store, config, bookmarks=BookmarkService(store), cache=cache, podcasts=podcasts)

    @property
    def status(self) -> FeedStatus:
        return self.state.status

    def get_items(self) -> List[Article]:
        return list(self.state.items)

    def is_liked(self, article_id: int) -> bool:
        return article_id in self.liked_ids

    def _on_like_changed(self, article_id: int, liked: bool) -> None:
        if liked:
            self.liked_ids.add(article_id)
        else:
            self.liked_ids.discard(article_id)

    # Persistence

    async def _load_persisted(self) -> Tuple[List[Article], Optional[float]]:
        try:
            raw = await self.store.get(KEY_FEED)
        except StorageFailure as e:
            self.logger.warning(f"Could not read persisted feed: {e}")
            return [], None
        if not raw:
            return [], None

        try:
            payload = json.loads(raw)
            entries = payload["items"]
            refreshed_at = float(payload.get("refreshed_at") or payload["saved_at"])
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Discarding corrupt persisted feed: {e}")
            return [], None

        articles = []
        for entry in entries:
            try:
                articles.append(Article.from_dict(entry))
            except (ValueError, KeyError, TypeError) as e:
                self.logger.debug(f"Skipping corrupt persisted article: {e}")
        return articles, refreshed_at

    async def _persist(self) -> None:
        tail = self.state.items[-self.config.max_cached_articles:] if self.config.max_cached_articles > 0 else []
        payload = {
            "saved_at": self.clock(),
            "refreshed_at": self.state.last_refresh_at,
            "items": [a.to_dict() for a in tail],
        }
        try:
            await self.store.set(KEY_FEED, json.dumps(payload))
        except StorageFailure as e:
            self.logger.warning(f"Could not persist feed; continuing in memory: {e}")

    # Fetching

    async def _fetch(self, count: int, query: Optional[str] = None, exclude_seen: bool = True) -> List[Article]:
        distribution = self.aggregator.calculate_source_distribution(count)
        exclude = set(self.state.seen_ids) if exclude_seen else None
        return await self.aggregator.fetch_batch(distribution, query=query, exclude_ids=exclude, strict=True)

    def _unique(self, articles: List[Article], seen: Set[int]) -> List[Article]:
        out = []
        for article in articles:
            if article.id in seen or not article.is_valid():
                continue
            seen.add(article.id)
            out.append(article)
        return out

    def _append(self, articles: List[Article]) -> int:
        new = self._unique(articles, self.state.seen_ids)
        self.state.items.extend(new)
        return len(new)

    def _alternate_topic(self) -> Optional[str]:
        topics = [t for t in self.config.topics if t != self._current_topic]
        if not topics:
            return None
        return self.rng.choice(topics)

    async def add_topic(self, topic: str) -> bool:
        """Add a user topic to the rotation if a search for it finds articles."""
        topic = (topic or "").strip()
        if not topic:
            return False
        if any(t.lower() == topic.lower() for t in self.config.topics):
            return True
        if not await self.aggregator.validate_topic(topic):
            self.logger.info(f"Rejected topic '{topic}': no articles found")
            return False
        self.config.topics.append(topic)
        return True

    # Lifecycle

    async def start(self) -> List[Article]:
        """Hydrate from the persisted feed, fetching fresh articles when needed."""
        if self.state.status != FeedStatus.UNINITIALIZED:
            return self.get_items()
        self.state.status = FeedStatus.LOADING
        epoch = self.state.epoch

        if self.bookmarks is not None:
            await self.bookmarks.load()
            self.liked_ids = await self.bookmarks.get_liked_ids()
            self._unsubscribe = self.bookmarks.subscribe(self._on_like_changed)

        cached, refreshed_at = await self._load_persisted()
        if epoch != self.state.epoch:
            return self.get_items()
        fresh = refreshed_at is not None and self.clock() - refreshed_at < self.config.refresh_interval_seconds
        if cached and fresh:
            self._append(cached)
            self.state.last_refresh_at = refreshed_at
            if len(self.state.items) >= self.config.initial_count:
                self.logger.info(f"Hydrated {len(self.state.items)} articles from the persisted feed")
                self.state.status = FeedStatus.READY
                return self.get_items()
        elif cached:
            self.logger.info("Persisted feed is stale; fetching a fresh batch")

        needed = max(self.config.initial_count - len(self.state.items), 1)
        try:
            batch = await self._fetch(needed)
        except BatchTotalFailure as e:
            if epoch != self.state.epoch:
                self.logger.debug("Initial load superseded; ignoring its failure")
                return self.get_items()
            if not self.state.items and cached:
                # Stale articles beat an empty screen
                self._append(cached)
            if self.state.items:
                self.logger.warning(f"Initial fetch failed, showing {len(self.state.items)} cached articles: {e}")
                self.state.status = FeedStatus.READY
                return self.get_items()
            self.state.error = str(e)
            self.state.status = FeedStatus.ERROR
            self.logger.error(f"Initial load failed: {e}")
            raise

        if epoch != self.state.epoch:
            self.logger.debug("Discarding initial batch from a superseded epoch")
            return self.get_items()

        if self.state.last_refresh_at is None:
            self.state.last_refresh_at = self.clock()
        added = self._append(batch)
        if not self.state.items:
            self.state.error = "No articles available"
            self.state.status = FeedStatus.ERROR
            self.logger.error("Initial load produced no articles")
            return []

        self.logger.info(f"Feed ready with {len(self.state.items)} articles ({added} fetched)")
        self.state.status = FeedStatus.READY
        await self._persist()
        return self.get_items()

    async def load_more(self, count: Optional[int] = None) -> int:
        """
        Append up to `count` unseen articles (default batch_size).

        Single-flight: returns 0 immediately while another load is running or
        when the feed is not READY. Background failures are logged, never
        raised. Returns the number of appended articles.
        """
        if self.state.is_background_loading or self.state.status != FeedStatus.READY:
            return 0
        self.state.is_background_loading = True
        self.state.status = FeedStatus.BACKGROUND_LOADING
        epoch = self.state.epoch
        count = count or self.config.batch_size

        try:
            batch = await self._fetch(count, query=self._current_topic)
            if epoch != self.state.epoch:
                self.logger.debug("Discarding background batch from a superseded epoch")
                return 0
            added = self._append(batch)

            if added == 0:
                topic = self._alternate_topic()
                if topic is not None:
                    self.logger.info(f"No new articles; retrying once with topic '{topic}'")
                    batch = await self._fetch(count, query=topic)
                    if epoch != self.state.epoch:
                        return 0
                    added = self._append(batch)
                    if added:
                        self._current_topic = topic

            if added:
                self.logger.info(f"Appended {added} articles (feed size {len(self.state.items)})")
                await self._persist()
            else:
                self.logger.info("Background load found no new articles")
            return added
        except BatchTotalFailure as e:
            self.logger.warning(f"Background load failed, will retry on next trigger: {e}")
            return 0
        finally:
            self.state.is_background_loading = False
            if self.state.status == FeedStatus.BACKGROUND_LOADING:
                self.state.status = FeedStatus.READY

    async def refresh(self) -> List[Article]:
        """
        Replace the feed with a fresh batch.

        Previously shown articles are not excluded, so a refresh may bring
        some of them back. Raises BatchTotalFailure when every source failed;
        the previous items are kept in that case.
        """
        self.state.epoch += 1
        epoch = self.state.epoch
        self.state.status = FeedStatus.LOADING
        self.state.error = None
        self._current_topic = None

        try:
            batch = await self._fetch(self.config.initial_count, exclude_seen=False)
        except BatchTotalFailure as e:
            if epoch == self.state.epoch:
                self.state.error = str(e)
                self.state.status = FeedStatus.READY if self.state.items else FeedStatus.ERROR
            self.logger.error(f"Refresh failed: {e}")
            raise

        if epoch != self.state.epoch:
            return self.get_items()

        fresh = self._unique(batch, set())
        if not fresh:
            self.logger.warning("Refresh returned no articles; keeping the current feed")
            if self.state.items:
                self.state.status = FeedStatus.READY
            else:
                self.state.error = "No articles available"
                self.state.status = FeedStatus.ERROR
            return self.get_items()

        self.state.items = fresh
        self.state.seen_ids = {a.id for a in fresh}
        self.state.last_refresh_at = self.clock()
        self.state.status = FeedStatus.READY
        self.logger.info(f"Feed refreshed with {len(fresh)} articles")
        await self._persist()
        return self.get_items()

    async def retry(self) -> List[Article]:
        """Retry action offered from the ERROR state."""
        return await self.refresh()

    async def clear(self) -> None:
        """Drop the feed and its persisted copy."""
        self.state.epoch += 1
        self.state.items = []
        self.state.seen_ids = set()
        self.state.last_refresh_at = None
        self.state.error = None
        self.state.status = FeedStatus.UNINITIALIZED
        self._current_topic = None
        try:
            await self.store.remove(KEY_FEED)
        except StorageFailure as e:
            self.logger.warning(f"Could not remove persisted feed: {e}")
        await self.cache.clear()

    # Background triggers

    def _schedule(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def notify_position(self, index: int) -> Optional[asyncio.Task]:
        """
        Report the consumer's read position.

        Marks the article viewed and, near the end of the feed, schedules a
        background load. Returns the scheduled load task, if any.
        """
        items = self.state.items
        if self.bookmarks is not None and 0 <= index < len(items):
            self._schedule(self.bookmarks.mark_viewed(items[index]))

        if index < len(items) - self.config.near_end_threshold:
            return None
        if self.state.is_background_loading or self.state.status != FeedStatus.READY:
            return None
        self.logger.debug(f"Position {index}/{len(items)} is near the end; loading more")
        return self._schedule(self.load_more())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.poll_interval_seconds)
            try:
                await self.load_more()
            except Exception as e:
                self.logger.error(f"Periodic load failed: {e}")

    def start_polling(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.ensure_future(self._poll_loop())
        self.logger.debug(f"Polling every {self.config.poll_interval_seconds}s")

    def stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def close(self) -> None:
        """Stop polling and cancel pending background work."""
        self.stop_polling()
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
