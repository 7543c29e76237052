"""Shared fixtures: fake HTTP client, fake adapters/aggregator and article factories."""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional

import pytest

from topiq.config import FeedConfig
from topiq.models.content import Article, SourceKind, Thumbnail, stable_id
from topiq.services.cache_service import KeyValueStore, MemoryKeyValueStore
from topiq.services.source_adapter import FetchResult
from topiq.utils.error_monitoring import BatchTotalFailure, StorageFailure


def build_article(
    upstream_id: Any,
    kind: SourceKind = SourceKind.ENCYCLOPEDIA,
    title: Optional[str] = None,
    body: Optional[str] = None,
    width: Optional[int] = 800,
    with_thumbnail: bool = True,
    description: Optional[str] = "A short description",
    year: Optional[int] = None,
) -> Article:
    return Article(
        id=stable_id(kind, upstream_id),
        upstream_id=str(upstream_id),
        title=f"Article number {upstream_id}" if title is None else title,
        body_text=("Lorem ipsum dolor sit amet. " * 25) if body is None else body,
        source_kind=kind,
        thumbnail=Thumbnail(url=f"https://example.org/{kind.value}/{upstream_id}.jpg", width=width, height=width)
        if with_thumbnail else None,
        description_line=description,
        year=year,
    )


class FakeHttpClient:
    """
    Routes URLs to canned payloads.

    A route value may be a payload, an Exception to raise, or a callable
    (sync or async) taking (url, params). Exact URL matches win over
    prefix matches.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes = dict(routes or {})
        self.calls: List[tuple] = []

    def _handler(self, url: str):
        if url in self.routes:
            return self.routes[url]
        prefixes = [p for p in self.routes if url.startswith(p)]
        if not prefixes:
            raise ConnectionError(f"no route for {url}")
        return self.routes[max(prefixes, key=len)]

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        self.calls.append((url, params))
        handler = self._handler(url)
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            result = handler(url, params)
            if inspect.isawaitable(result):
                result = await result
            return result
        return handler

    async def get_text(self, url: str, params: Optional[Dict[str, Any]] = None) -> str:
        return await self.get_json(url, params)

    def count(self, prefix: str) -> int:
        return sum(1 for url, _ in self.calls if url.startswith(prefix))

    async def close(self) -> None:
        pass


class FakeAdapter:
    """Stands in for a SourceAdapter inside the aggregator."""

    def __init__(self, kind: SourceKind, articles=None, error: Optional[str] = None,
                 raises: Optional[Exception] = None, delay: float = 0.0):
        self.kind = kind
        self.articles = list(articles or [])
        self.error = error
        self.raises = raises
        self.delay = delay
        self.calls: List[tuple] = []

    async def fetch_result(self, count: int, query: Optional[str] = None) -> FetchResult:
        self.calls.append((count, query))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        if self.error is not None:
            return FetchResult(self.kind, [], 0.0, error=self.error)
        return FetchResult(self.kind, self.articles[:count], 0.01)


class FakeAggregator:
    """
    Scripted aggregator for session tests.

    Each fetch_batch call consumes the next response: a list of articles,
    an exception to raise, or a callable (sync or async) taking
    (counts, query, exclude_ids) and returning a list. Once the script is
    exhausted, `default` is used.
    """

    def __init__(self, responses=None, default=None, valid_topics=()):
        self.responses = list(responses or [])
        self.default = default
        self.valid_topics = set(valid_topics)
        self.calls: List[dict] = []
        self.validated: List[str] = []

    def calculate_source_distribution(self, total: int) -> Dict[SourceKind, int]:
        return {SourceKind.ENCYCLOPEDIA: total} if total > 0 else {}

    async def validate_topic(self, topic: str) -> bool:
        self.validated.append(topic)
        return topic in self.valid_topics

    async def fetch_batch(self, requested_counts, query=None, exclude_ids=None, strict=False):
        self.calls.append({
            "counts": dict(requested_counts),
            "query": query,
            "exclude_ids": None if exclude_ids is None else set(exclude_ids),
            "strict": strict,
        })
        response = self.responses.pop(0) if self.responses else self.default
        if response is None:
            return []
        if isinstance(response, Exception):
            raise response
        if callable(response):
            result = response(requested_counts, query, exclude_ids)
            if inspect.isawaitable(result):
                result = await result
            return list(result)
        return list(response)


class FailingStore(KeyValueStore):
    """A store whose every call fails."""

    async def get(self, key):
        raise StorageFailure("disk unavailable")

    async def set(self, key, value):
        raise StorageFailure("disk unavailable")

    async def remove(self, key):
        raise StorageFailure("disk unavailable")


@pytest.fixture
def make_article() -> Callable[..., Article]:
    return build_article


@pytest.fixture
def make_articles() -> Callable[..., List[Article]]:
    def factory(ids, kind: SourceKind = SourceKind.ENCYCLOPEDIA, **kwargs) -> List[Article]:
        return [build_article(i, kind, **kwargs) for i in ids]
    return factory


@pytest.fixture
def fake_http():
    return FakeHttpClient()


@pytest.fixture
def memory_store():
    return MemoryKeyValueStore()


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def feed_config():
    return FeedConfig(
        initial_count=5,
        batch_size=5,
        near_end_threshold=2,
        poll_interval_seconds=0.01,
        max_cached_articles=50,
        adapter_timeout_seconds=1.0,
    )


@pytest.fixture
def fake_adapter_cls():
    return FakeAdapter


@pytest.fixture
def fake_aggregator_cls():
    return FakeAggregator


@pytest.fixture
def batch_failure():
    return BatchTotalFailure([SourceKind.ENCYCLOPEDIA.value], {SourceKind.ENCYCLOPEDIA.value: "network down"})
