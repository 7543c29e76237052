"""
Trending topics adapter.

There is no public trending-search API to call, so this source serves a
built-in list of stories. It never fails.
"""

import random
from typing import List, Optional

from topiq.models.content import Article, SourceKind, Thumbnail, stable_id
from topiq.services.source_adapter import SourceAdapter


TRENDING_STORIES = [
    {
        "id": 1001,
        "title": "AI Model Breaks New Record in Scientific Discovery",
        "summary": "A new AI model has accelerated scientific research by predicting molecular structures with unprecedented accuracy.",
        "image": "https://images.unsplash.com/photo-1620712943543-bcc4688e7485?ixlib=rb-4.0.3&auto=format&fit=crop&w=800&q=60",
    },
    {
        "id": 1002,
        "title": "Breakthrough in Quantum Computing Announced",
        "summary": "Researchers have demonstrated a 1000-qubit processor that solves problems previously thought out of reach.",
        "image": "https://images.unsplash.com/photo-1635070041078-e363dbe005cb?ixlib=rb-4.0.3&auto=format&fit=crop&w=800&q=60",
    },
    {
        "id": 1003,
        "title": "New Sustainable Material Could Replace Plastic",
        "summary": "Scientists have developed a biodegradable material with properties similar to plastic that breaks down completely in weeks.",
        "image": "https://images.unsplash.com/photo-1605600659453-128bfdb251a8?ixlib=rb-4.0.3&auto=format&fit=crop&w=800&q=60",
    },
    {
        "id": 1004,
        "title": "Tech Company Launches AR Glasses",
        "summary": "The lightweight AR glasses blend digital information with the real world, bringing science fiction a step closer.",
        "image": "https://images.unsplash.com/photo-1478416272538-5f7e51dc5400?ixlib=rb-4.0.3&auto=format&fit=crop&w=800&q=60",
    },
    {
        "id": 1005,
        "title": "Global Climate Initiative Exceeds CO2 Reduction Goals",
        "summary": "A multinational climate alliance reports carbon emissions 15% below its projections for this year.",
        "image": "https://images.unsplash.com/photo-1535016120720-40c646be5580?ixlib=rb-4.0.3&auto=format&fit=crop&w=800&q=60",
    },
    {
        "id": 1006,
        "title": "Long-Running Study Links Lifestyle Factors to Lifespan",
        "summary": "A 30-year study has identified lifestyle factors associated with substantially longer life expectancy.",
        "image": "https://images.unsplash.com/photo-1559598467-f8b76c8155d0?ixlib=rb-4.0.3&auto=format&fit=crop&w=800&q=60",
    },
    {
        "id": 1007,
        "title": "Space Tourism Moves Closer to Average Consumers",
        "summary": "The first commercial space hotel plans to open by 2028, with reservation prices dropping sharply.",
        "image": "https://images.unsplash.com/photo-1446776811953-b23d57bd21aa?ixlib=rb-4.0.3&auto=format&fit=crop&w=800&q=60",
    },
    {
        "id": 1008,
        "title": "Solid-State Battery Powers Phone for a Week",
        "summary": "New solid-state battery technology promises to extend smartphone battery life to over a week on a single charge.",
        "image": "https://images.unsplash.com/photo-1601706354997-701e911ac734?ixlib=rb-4.0.3&auto=format&fit=crop&w=800&q=60",
    },
]


class TrendingAdapter(SourceAdapter):
    """Serves a shuffled subset of the built-in trending stories."""

    kind = SourceKind.TRENDING

    def __init__(self, http, cache=None, config=None, rng: Optional[random.Random] = None, stories=None):
        super().__init__(http, cache, config)
        self.rng = rng or random.Random()
        self.stories = list(stories if stories is not None else TRENDING_STORIES)

    async def _fetch_articles(self, count: int, query: Optional[str]) -> List[Article]:
        stories = list(self.stories)
        self.rng.shuffle(stories)

        articles = []
        for story in stories[:count]:
            image = story.get("image")
            articles.append(Article(
                id=stable_id(self.kind, story["id"]),
                upstream_id=str(story["id"]),
                title=story["title"],
                body_text=story.get("summary") or "",
                thumbnail=Thumbnail(url=image) if image else None,
                source_kind=self.kind,
                description_line="Trending search from Google",
                labels=["trending"],
            ))
        return articles
