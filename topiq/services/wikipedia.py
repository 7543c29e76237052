"""
Encyclopedia adapters backed by the Wikipedia REST and Action APIs.

- WikipediaRandomAdapter draws random page summaries until enough of them
  pass the quality gate, in a bounded number of rounds.
- WikipediaSearchAdapter runs a full-text search and returns pages with
  intro extracts and lead images.
- WikipediaAdapter picks between the two depending on whether a query is given.
"""

import asyncio
import math
from typing import Any, Dict, List, Optional

from topiq.models.content import Article, SourceKind, Thumbnail, stable_id
from topiq.services.source_adapter import FetchResult, SourceAdapter
from topiq.utils.error_monitoring import AdapterFailure


RANDOM_SUMMARY_URL = "https://en.wikipedia.org/api/rest_v1/page/random/summary"
ACTION_API_URL = "https://en.wikipedia.org/w/api.php"

MAX_DRAWS_PER_ROUND = 40


def _thumbnail_from(data: Optional[Dict[str, Any]]) -> Optional[Thumbnail]:
    if not isinstance(data, dict) or not data.get("source"):
        return None
    return Thumbnail(url=data["source"], width=data.get("width"), height=data.get("height"))


def summary_to_article(summary: Dict[str, Any]) -> Optional[Article]:
    """Build an Article from a REST page summary, or None if it is unusable."""
    if not isinstance(summary, dict):
        return None
    page_id = summary.get("pageid")
    title = (summary.get("title") or "").strip()
    if page_id is None or not title:
        return None
    if summary.get("type") == "disambiguation":
        return None

    page_url = ((summary.get("content_urls") or {}).get("desktop") or {}).get("page")
    return Article(
        id=stable_id(SourceKind.ENCYCLOPEDIA, page_id),
        upstream_id=str(page_id),
        title=title,
        body_text=summary.get("extract") or "",
        body_html=summary.get("extract_html"),
        thumbnail=_thumbnail_from(summary.get("thumbnail") or summary.get("originalimage")),
        source_kind=SourceKind.ENCYCLOPEDIA,
        external_url=page_url or f"https://en.wikipedia.org/?curid={page_id}",
        description_line=summary.get("description"),
        labels=["encyclopedia"],
    )


class WikipediaRandomAdapter(SourceAdapter):
    """Random encyclopedia articles that have a good extract and a large image."""

    kind = SourceKind.ENCYCLOPEDIA

    async def _draw(self, n: int) -> List[Article]:
        results = await asyncio.gather(
            *(self._get_json(RANDOM_SUMMARY_URL) for _ in range(n)),
            return_exceptions=True,
        )
        articles = []
        errors = 0
        for result in results:
            if isinstance(result, Exception):
                errors += 1
                continue
            article = summary_to_article(result)
            if article is not None:
                articles.append(article)
        if errors and errors == len(results):
            raise AdapterFailure(self.name, f"all {errors} random summary requests failed")
        if errors:
            self.logger.debug(f"{self.name}: {errors}/{len(results)} random summary requests failed")
        return articles

    async def _fetch_articles(self, count: int, query: Optional[str]) -> List[Article]:
        found: Dict[int, Article] = {}
        relaxed: Dict[int, Article] = {}
        draws = min(self.raw_count(count), MAX_DRAWS_PER_ROUND)

        for attempt in range(1, self.config.max_fetch_attempts + 1):
            for article in await self._draw(draws):
                if self.extract_ok(article) and self.thumbnail_ok(article):
                    found.setdefault(article.id, article)
                elif article.has_thumbnail and article.body_text.strip():
                    relaxed.setdefault(article.id, article)
            if len(found) >= count:
                break
            self.logger.debug(f"{self.name}: round {attempt} found {len(found)}/{count} qualifying summaries")
            draws = min(math.ceil(draws * 1.5), MAX_DRAWS_PER_ROUND)

        articles = list(found.values())
        if len(articles) < count:
            # Relaxed pass: accept a shorter extract rather than returning too few
            extra = [a for a in relaxed.values() if self.thumbnail_ok(a) and a.id not in found]
            articles.extend(extra[: count - len(articles)])
        return articles

    def accepts(self, article: Article) -> bool:
        # Extract length is enforced in _fetch_articles so the relaxed pass can skip it
        return article.is_valid() and self.thumbnail_ok(article)


class WikipediaSearchAdapter(SourceAdapter):
    """Encyclopedia articles matching a search query."""

    kind = SourceKind.ENCYCLOPEDIA

    @property
    def cache_ttl(self) -> float:
        return self.config.search_cache_ttl_seconds

    async def _fetch_articles(self, count: int, query: Optional[str]) -> List[Article]:
        if not query or not query.strip():
            raise AdapterFailure(self.name, "search requires a query")

        params = {
            "action": "query",
            "format": "json",
            "generator": "search",
            "gsrsearch": query.strip(),
            "gsrlimit": min(self.raw_count(count), 50),
            "prop": "pageimages|extracts|description",
            "exintro": 1,
            "explaintext": 1,
            "exlimit": "max",
            "piprop": "thumbnail",
            "pithumbsize": 800,
            "origin": "*",
        }
        data = await self._get_json(ACTION_API_URL, params=params)
        if not isinstance(data, dict):
            raise AdapterFailure(self.name, "malformed search response")

        pages = (data.get("query") or {}).get("pages") or {}
        if isinstance(pages, dict):
            pages = list(pages.values())
        pages = sorted((p for p in pages if isinstance(p, dict)), key=lambda p: p.get("index", 0))

        articles = []
        for page in pages:
            page_id = page.get("pageid")
            title = (page.get("title") or "").strip()
            if page_id is None or not title:
                continue
            articles.append(Article(
                id=stable_id(SourceKind.ENCYCLOPEDIA, page_id),
                upstream_id=str(page_id),
                title=title,
                body_text=page.get("extract") or page.get("description") or "",
                thumbnail=_thumbnail_from(page.get("thumbnail")),
                source_kind=SourceKind.ENCYCLOPEDIA,
                external_url=f"https://en.wikipedia.org/?curid={page_id}",
                description_line=page.get("description"),
                labels=["encyclopedia", query.strip().lower()],
            ))
        return articles


class WikipediaAdapter(SourceAdapter):
    """Encyclopedia source: search when given a query, random draws otherwise."""

    kind = SourceKind.ENCYCLOPEDIA

    def __init__(self, http, cache=None, config=None):
        super().__init__(http, cache, config)
        self.random = WikipediaRandomAdapter(http, self.cache, self.config)
        self.search = WikipediaSearchAdapter(http, self.cache, self.config)

    async def _fetch_articles(self, count: int, query: Optional[str]) -> List[Article]:
        adapter = self.search if query else self.random
        return await adapter._fetch_articles(count, query)

    async def fetch_result(self, count: int, query: Optional[str] = None) -> FetchResult:
        adapter = self.search if query else self.random
        return await adapter.fetch_result(count, query)
