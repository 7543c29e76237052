"""
Source adapter contract shared by every upstream content source.

An adapter turns one upstream API's payload into Articles. Subclasses only
implement `_fetch_articles()`, which may raise freely; the base class owns
the timeout, response caching, the per-source quality gate, thumbnail
normalization and truncation, and guarantees that `fetch()` never raises.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from topiq.config import FeedConfig, SourcePolicy
from topiq.models.content import Article, SourceKind
from topiq.services.cache_service import TTLCache
from topiq.services.http_client import HttpClient
from topiq.services.image_normalizer import upscale


@dataclass
class FetchResult:
    """Result from one adapter fetch"""
    source: SourceKind
    articles: List[Article] = field(default_factory=list)
    fetch_time: float = 0.0
    error: Optional[str] = None
    from_cache: bool = False
    used_fallback: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None


class SourceAdapter(ABC):
    """Base class for all source adapters."""

    kind: SourceKind

    def __init__(self, http: HttpClient, cache: Optional[TTLCache] = None, config: Optional[FeedConfig] = None):
        self.http = http
        self.cache = cache or TTLCache()
        self.config = config or FeedConfig()
        self.policy: SourcePolicy = self.config.policy(self.kind)
        self.timeout = self.config.adapter_timeout_seconds
        self.semaphore = asyncio.Semaphore(self.config.max_concurrent_requests)
        self.logger = logging.getLogger(__name__)

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def cache_ttl(self) -> float:
        return self.policy.cache_ttl_seconds

    @abstractmethod
    async def _fetch_articles(self, count: int, query: Optional[str]) -> List[Article]:
        """Fetch raw candidate articles. May raise on any upstream problem."""

    def _offline_fallback(self, count: int, query: Optional[str]) -> List[Article]:
        """Deterministic articles served when the upstream is unreachable."""
        return []

    def raw_count(self, count: int) -> int:
        """How many raw candidates to request for `count` wanted articles."""
        return max(count, math.ceil(count * self.policy.over_fetch))

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        async with self.semaphore:
            return await self.http.get_json(url, params=params)

    async def _get_text(self, url: str, params: Optional[Dict[str, Any]] = None) -> str:
        async with self.semaphore:
            return await self.http.get_text(url, params=params)

    # Quality gate

    def thumbnail_ok(self, article: Article) -> bool:
        if article.source_kind != self.kind:
            return False
        if not article.has_thumbnail:
            return not self.policy.requires_thumbnail
        width = article.thumbnail.width
        if self.policy.min_thumbnail_width and width is not None:
            return width >= self.policy.min_thumbnail_width
        return True

    def extract_ok(self, article: Article) -> bool:
        if not self.policy.min_extract_length:
            return True
        return len((article.body_text or "").strip()) >= self.policy.min_extract_length

    def accepts(self, article: Article) -> bool:
        """Per-source quality gate applied to every candidate."""
        return article.is_valid() and self.thumbnail_ok(article) and self.extract_ok(article)

    def _finalize(self, candidates: List[Article], count: int) -> List[Article]:
        """Gate, dedupe, normalize thumbnails and truncate to `count`."""
        out: List[Article] = []
        seen = set()
        for article in candidates:
            if article.id in seen or not self.accepts(article):
                continue
            seen.add(article.id)
            if article.thumbnail is not None:
                article = replace(article, thumbnail=upscale(article.thumbnail))
            out.append(article)
            if len(out) >= count:
                break
        return out

    def _cache_key(self, count: int, query: Optional[str]) -> str:
        return f"{self.name}:{(query or '').strip().lower()}:{count}"

    async def fetch_result(self, count: int, query: Optional[str] = None) -> FetchResult:
        """Fetch up to `count` articles, reporting errors instead of raising."""
        loop = asyncio.get_running_loop()
        start = loop.time()
        if count <= 0:
            return FetchResult(self.kind)

        ttl = self.cache_ttl
        key = self._cache_key(count, query)
        cached = await self.cache.get(key, ttl)
        if cached is not None:
            try:
                articles = [Article.from_dict(d) for d in cached]
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                self.logger.warning(f"{self.name}: ignoring unreadable cache entry {key}: {e}")
                await self.cache.invalidate(key)
            else:
                self.logger.debug(f"{self.name}: served {len(articles)} articles from cache")
                return FetchResult(self.kind, articles, loop.time() - start, from_cache=True)

        error = None
        try:
            raw = await asyncio.wait_for(self._fetch_articles(count, query), timeout=self.timeout)
            articles = self._finalize(raw, count)
            self.logger.info(f"{self.name}: {len(raw)} candidates -> {len(articles)} articles")
        except asyncio.TimeoutError:
            error = f"Timed out after {self.timeout}s"
            articles = []
        except Exception as e:
            error = str(e) or type(e).__name__
            articles = []

        if error is not None:
            self.logger.warning(f"{self.name} fetch failed: {error}")
            if self.config.use_offline_fallbacks:
                fallback = self._finalize(self._offline_fallback(count, query), count)
                if fallback:
                    self.logger.info(f"{self.name}: serving {len(fallback)} offline fallback articles")
                    return FetchResult(self.kind, fallback, loop.time() - start, error=error, used_fallback=True)
            return FetchResult(self.kind, [], loop.time() - start, error=error)

        if articles and ttl > 0:
            await self.cache.set(key, [a.to_dict() for a in articles])
        return FetchResult(self.kind, articles, loop.time() - start)

    async def fetch(self, count: int, query: Optional[str] = None) -> List[Article]:
        """Fetch up to `count` articles. Never raises."""
        result = await self.fetch_result(count, query)
        return result.articles
