"""
Historical events adapter: "on this day" events for today's month and day.
"""

import random
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from topiq.models.content import Article, SourceKind, stable_id
from topiq.services.source_adapter import SourceAdapter
from topiq.utils.error_monitoring import AdapterFailure


EVENTS_URL = "https://byabbe.se/on-this-day/{month}/{day}/events.json"
TITLE_LENGTH = 60


def _parse_year(value: Any) -> Optional[int]:
    """Years come as strings, sometimes with an era suffix ("44 BC")."""
    text = str(value or "").strip()
    if not text:
        return None
    bc = text.upper().endswith("BC")
    digits = "".join(ch for ch in text if ch.isdigit())
    if not digits:
        return None
    year = int(digits)
    return -year if bc else year


class OnThisDayAdapter(SourceAdapter):
    """Events that happened on today's date in past years. No thumbnails."""

    kind = SourceKind.HISTORICAL_EVENT

    def __init__(self, http, cache=None, config=None, rng: Optional[random.Random] = None,
                 today: Callable[[], date] = date.today):
        super().__init__(http, cache, config)
        self.rng = rng or random.Random()
        self.today = today

    def _cache_key(self, count: int, query: Optional[str]) -> str:
        d = self.today()
        return f"{self.name}:{d.month}/{d.day}:{count}"

    def event_to_article(self, event: Dict[str, Any], today: date) -> Optional[Article]:
        if not isinstance(event, dict):
            return None
        description = (event.get("description") or "").strip()
        year_text = str(event.get("year") or "").strip()
        if not description or not year_text:
            return None

        short = description[:TITLE_LENGTH] + ("..." if len(description) > TITLE_LENGTH else "")
        readable_date = f"{today.strftime('%B')} {today.day}"
        links = event.get("wikipedia") or []
        link = links[0].get("wikipedia") if links and isinstance(links[0], dict) else None

        upstream_id = f"{today.month}/{today.day}/{year_text}/{description}"
        return Article(
            id=stable_id(self.kind, upstream_id),
            upstream_id=upstream_id,
            title=f"{year_text}: {short}",
            body_text=description,
            source_kind=self.kind,
            external_url=link,
            description_line=f"On {readable_date}, in the year {year_text}",
            year=_parse_year(year_text),
            date=f"{today.month}/{today.day}",
            labels=["history"],
        )

    async def _fetch_articles(self, count: int, query: Optional[str]) -> List[Article]:
        today = self.today()
        data = await self._get_json(EVENTS_URL.format(month=today.month, day=today.day))
        events = data.get("events") if isinstance(data, dict) else None
        if not isinstance(events, list):
            raise AdapterFailure(self.name, "malformed events response")

        events = list(events)
        self.rng.shuffle(events)

        articles = []
        for event in events:
            article = self.event_to_article(event, today)
            if article is not None:
                articles.append(article)
            if len(articles) >= count:
                break
        return articles
