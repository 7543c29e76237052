"""
Link aggregator adapter for Hacker News top stories (Firebase API).
"""

import asyncio
import html
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from topiq.models.content import Article, SourceKind, Thumbnail, stable_id
from topiq.services.source_adapter import SourceAdapter
from topiq.utils.error_monitoring import AdapterFailure


HN_API_BASE = "https://hacker-news.firebaseio.com/v0"
LOGO_URL = "https://logo.clearbit.com/{domain}?size=500&format=png"
LOGO_SIZE = 500
MAX_EXTRACT_LENGTH = 500

_TAG_RE = re.compile(r"<[^>]+>")


def _domain(url: str) -> str:
    host = urlparse(url).hostname or ""
    return host[4:] if host.startswith("www.") else host


def _plain_text(text: str) -> str:
    return html.unescape(_TAG_RE.sub(" ", text)).strip()


class HackerNewsAdapter(SourceAdapter):
    """Top stories that link out to a web page."""

    kind = SourceKind.LINK_AGGREGATOR

    async def _fetch_item(self, item_id: Any) -> Optional[Dict[str, Any]]:
        return await self._get_json(f"{HN_API_BASE}/item/{item_id}.json")

    def story_to_article(self, story: Dict[str, Any]) -> Optional[Article]:
        if not isinstance(story, dict):
            return None
        title = (story.get("title") or "").strip()
        url = story.get("url")
        if not title or not url or story.get("id") is None:
            return None
        if story.get("dead") or story.get("deleted"):
            return None
        if url.lower().split("?")[0].endswith(".pdf"):
            return None

        domain = _domain(url)
        if story.get("text"):
            extract = _plain_text(story["text"])
        else:
            extract = f"Article from {domain}. Click to read more."
        if len(extract) > MAX_EXTRACT_LENGTH:
            extract = extract[: MAX_EXTRACT_LENGTH - 3] + "..."

        return Article(
            id=stable_id(self.kind, story["id"]),
            upstream_id=str(story["id"]),
            title=title,
            body_text=extract,
            thumbnail=Thumbnail(url=LOGO_URL.format(domain=domain), width=LOGO_SIZE, height=LOGO_SIZE) if domain else None,
            source_kind=self.kind,
            external_url=url,
            description_line=f"Posted on Hacker News - {domain}",
            labels=["tech", "news"],
        )

    async def _fetch_articles(self, count: int, query: Optional[str]) -> List[Article]:
        story_ids = await self._get_json(f"{HN_API_BASE}/topstories.json")
        if not isinstance(story_ids, list):
            raise AdapterFailure(self.name, "malformed top stories response")

        candidates = story_ids[: self.raw_count(count)]
        results = await asyncio.gather(*(self._fetch_item(i) for i in candidates), return_exceptions=True)

        failures = sum(1 for r in results if isinstance(r, Exception))
        if candidates and failures == len(candidates):
            raise AdapterFailure(self.name, f"all {failures} item requests failed")

        articles = []
        for result in results:
            if isinstance(result, Exception):
                continue
            try:
                article = self.story_to_article(result)
            except (ValueError, TypeError, AttributeError) as e:
                self.logger.debug(f"{self.name}: skipping malformed story: {e}")
                continue
            if article is not None:
                articles.append(article)
        return articles
