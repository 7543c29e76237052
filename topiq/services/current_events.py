"""
Current events adapter for the Wikipedia Current Events portal.

The dated portal page (Portal:Current_events/YYYY_MM_DD) is fetched through
the parse API and each event bullet becomes one article. Events that link to
an encyclopedia page borrow that page's title and thumbnail.
"""

import asyncio
from datetime import date, timedelta
from typing import Callable, List, Optional, Tuple
from urllib.parse import quote, unquote

from bs4 import BeautifulSoup

from topiq.models.content import Article, SourceKind, Thumbnail, stable_id
from topiq.services.source_adapter import SourceAdapter
from topiq.utils.error_monitoring import AdapterFailure


ACTION_API_URL = "https://en.wikipedia.org/w/api.php"
SUMMARY_URL = "https://en.wikipedia.org/api/rest_v1/page/summary/{title}"
PORTAL_URL = "https://en.wikipedia.org/wiki/Portal:Current_events"


def portal_page(day: date) -> str:
    return f"Portal:Current_events/{day.year}_{day.month:02d}_{day.day:02d}"


def parse_event_items(page_html: str) -> List[Tuple[str, str, Optional[str]]]:
    """Return (text, inner_html, linked page title) for each leaf event bullet."""
    soup = BeautifulSoup(page_html, "html.parser")
    items = []
    for li in soup.select(".current-events-content li"):
        if li.find("li") is not None:
            # Topic heading wrapping nested events
            continue
        text = li.get_text(" ", strip=True)
        if not text:
            continue
        page_title = None
        for link in li.find_all("a", href=True):
            href = link["href"]
            if href.startswith("/wiki/") and ":" not in href[len("/wiki/"):]:
                page_title = unquote(href[len("/wiki/"):])
                break
        items.append((text, li.decode_contents(), page_title))
    return items


class CurrentEventsAdapter(SourceAdapter):
    """Today's (or yesterday's) current events."""

    kind = SourceKind.CURRENT_EVENT

    def __init__(self, http, cache=None, config=None, today: Callable[[], date] = date.today):
        super().__init__(http, cache, config)
        self.today = today

    def _cache_key(self, count: int, query: Optional[str]) -> str:
        return f"{self.name}:{self.today().isoformat()}:{count}"

    async def _fetch_page(self, day: date) -> str:
        params = {
            "action": "parse",
            "page": portal_page(day),
            "format": "json",
            "prop": "text",
            "origin": "*",
        }
        data = await self._get_json(ACTION_API_URL, params=params)
        text = ((data or {}).get("parse") or {}).get("text") if isinstance(data, dict) else None
        if isinstance(text, dict):
            text = text.get("*")
        if not text:
            raise AdapterFailure(self.name, f"no portal page for {day.isoformat()}")
        return text

    async def _summary_thumbnail(self, page_title: str) -> Tuple[Optional[str], Optional[Thumbnail]]:
        try:
            data = await self._get_json(SUMMARY_URL.format(title=quote(page_title, safe="")))
        except Exception as e:
            self.logger.debug(f"{self.name}: no summary for {page_title}: {e}")
            return None, None
        if not isinstance(data, dict):
            return None, None
        thumb = data.get("thumbnail") or {}
        thumbnail = Thumbnail(url=thumb["source"], width=thumb.get("width"), height=thumb.get("height")) if thumb.get("source") else None
        return data.get("title"), thumbnail

    async def _events_for(self, day: date, count: int) -> List[Article]:
        page_html = await self._fetch_page(day)
        items = parse_event_items(page_html)[: self.raw_count(count)]
        if not items:
            raise AdapterFailure(self.name, f"no events listed for {day.isoformat()}")

        enrichments = await asyncio.gather(
            *(self._summary_thumbnail(title) if title else self._no_summary() for _, _, title in items)
        )

        day_label = day.isoformat()
        articles = []
        for (text, inner_html, page_title), (summary_title, thumbnail) in zip(items, enrichments):
            if summary_title:
                title = summary_title
            elif page_title:
                title = page_title.replace("_", " ")
            else:
                title = f"{day_label} Event"
            upstream_id = f"{day_label}/{text}"
            articles.append(Article(
                id=stable_id(self.kind, upstream_id),
                upstream_id=upstream_id,
                title=title,
                body_text=text,
                body_html=inner_html,
                thumbnail=thumbnail,
                source_kind=self.kind,
                external_url=f"https://en.wikipedia.org/wiki/{portal_page(day)}",
                description_line=f"Current event: {day_label}",
                date=day_label,
                labels=["news", "current events"],
            ))
        return articles

    async def _no_summary(self) -> Tuple[Optional[str], Optional[Thumbnail]]:
        return None, None

    async def _fetch_articles(self, count: int, query: Optional[str]) -> List[Article]:
        today = self.today()
        try:
            return await self._events_for(today, count)
        except AdapterFailure as e:
            self.logger.info(f"{self.name}: {e}; trying the previous day")
        return await self._events_for(today - timedelta(days=1), count)

    def _offline_fallback(self, count: int, query: Optional[str]) -> List[Article]:
        day_label = self.today().isoformat()
        upstream_id = f"{day_label}/unavailable"
        return [Article(
            id=stable_id(self.kind, upstream_id),
            upstream_id=upstream_id,
            title=f"{day_label} Events",
            body_text="We couldn't fetch today's current events. Please check Wikipedia directly.",
            source_kind=self.kind,
            external_url=PORTAL_URL,
            description_line=f"Current events: {day_label}",
            date=day_label,
            labels=["news", "current events"],
        )]
