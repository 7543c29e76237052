"""
Podcast discovery: episode search, category search and trending shows.

Search goes through the iTunes Search API; every show found is expanded to
its latest episodes with a lookup call. Trending shows come from a local
directory of pre-fetched episode files when one is configured, otherwise
from a small built-in list. Podcasts are not a feed source; they back the
"related podcasts" panel next to an article and the podcast tab.
"""

import asyncio
import hashlib
import json
import logging
import os
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse

from topiq.config import FeedConfig
from topiq.models.content import Article, PodcastEpisode, Thumbnail
from topiq.services.cache_service import TTLCache
from topiq.services.http_client import HttpClient
from topiq.services.image_normalizer import upscale


ITUNES_SEARCH_URL = "https://itunes.apple.com/search"
ITUNES_LOOKUP_URL = "https://itunes.apple.com/lookup"

SEARCH_SHOWS_LIMIT = 10
EPISODES_PER_SHOW = 3
EPISODES_PER_CATEGORY_SHOW = 100

# Feed topics -> iTunes genre names
CATEGORY_MAP = {
    "science": "Science",
    "history": "History",
    "technology": "Technology",
    "news": "News",
    "politics": "Politics",
    "business": "Business",
    "education": "Education",
    "entertainment": "Entertainment",
    "health": "Health & Fitness",
    "sports": "Sports",
    "arts": "Arts",
    "music": "Music",
    "society": "Society & Culture",
    "philosophy": "Philosophy",
}

SAMPLE_PODCASTS = [
    PodcastEpisode(
        id=1001,
        title="The Daily",
        description="The biggest stories of our time, told by the best journalists.",
        url="https://www.nytimes.com/column/the-daily",
        feed_title="The New York Times",
        duration="25:00",
        image="https://is1-ssl.mzstatic.com/image/thumb/Podcasts125/v4/89/51/48/895148d6-fe7b-e79c-6e06-71d540399aa3/mza_9278186528825138484.jpg/600x600bb.jpg",
        feed_url="https://feeds.simplecast.com/54nAGcIl",
        categories=["News"],
    ),
    PodcastEpisode(
        id=1002,
        title="Science Vs",
        description="Science Vs takes on fads and trends to find out what's fact and what's not.",
        url="https://gimletmedia.com/science-vs",
        feed_title="Gimlet",
        duration="31:00",
        image="https://is5-ssl.mzstatic.com/image/thumb/Podcasts125/v4/58/a5/2c/58a52c5d-91dc-a59f-9206-b1919fcc8c55/mza_17589569769640067902.jpg/600x600bb.jpg",
        feed_url="https://feeds.megaphone.fm/sciencevs",
        categories=["Science"],
    ),
    PodcastEpisode(
        id=1003,
        title="Radiolab",
        description="Investigating a strange world with curiosity and clarity.",
        url="https://www.wnycstudios.org/podcasts/radiolab",
        feed_title="WNYC Studios",
        duration="45:00",
        image="https://is4-ssl.mzstatic.com/image/thumb/Podcasts115/v4/6e/51/96/6e5196b7-ca97-01a1-efb5-d0a094159767/mza_16172304289559890899.jpg/600x600bb.jpg",
        feed_url="https://feeds.wnyc.org/radiolab",
        categories=["Science", "Education"],
    ),
    PodcastEpisode(
        id=1004,
        title="Planet Money",
        description="The economy explained.",
        url="https://www.npr.org/podcasts/510289/planet-money",
        feed_title="NPR",
        duration="20:00",
        image="https://is3-ssl.mzstatic.com/image/thumb/Podcasts126/v4/98/d2/d5/98d2d599-1d21-e9d5-5cb7-749d9242e958/mza_11520507046916537252.jpg/600x600bb.jpg",
        feed_url="https://feeds.npr.org/510289/podcast.xml",
        categories=["Business", "Economics"],
    ),
    PodcastEpisode(
        id=1005,
        title="TED Talks Daily",
        description="Every weekday, the latest TED talks in audio.",
        url="https://www.ted.com/talks",
        feed_title="TED",
        duration="15:00",
        image="https://is1-ssl.mzstatic.com/image/thumb/Podcasts115/v4/d2/09/d5/d209d58f-8f9f-c2aa-3c59-0ffc4e5e35ec/mza_11998461439228757191.png/600x600bb.jpg",
        feed_url="https://feeds.feedburner.com/TEDTalks_audio",
        categories=["Education", "Ideas"],
    ),
]


def format_duration(millis: Any) -> str:
    """Milliseconds -> "mm:ss"."""
    if not isinstance(millis, (int, float)) or millis <= 0:
        return "00:00"
    total_seconds = int(millis // 1000)
    return f"{total_seconds // 60:02d}:{total_seconds % 60:02d}"


def best_artwork(*urls: Optional[str]) -> Optional[str]:
    """First available artwork URL, upgraded to the largest size the host serves."""
    for url in urls:
        if url:
            return upscale(Thumbnail(url=url)).url
    return None


def _release_date(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return isoparse(value).date().isoformat()
    except ValueError:
        return None


def sample_podcasts(count: int) -> List[PodcastEpisode]:
    """The built-in shows, repeated with distinct ids to reach `count`."""
    result = [PodcastEpisode.from_dict(p.to_dict()) for p in SAMPLE_PODCASTS]
    while len(result) < count:
        round_no = len(result) // len(SAMPLE_PODCASTS) + 1
        for p in SAMPLE_PODCASTS:
            copy = PodcastEpisode.from_dict(p.to_dict())
            copy.id = p.id + 1000 * len(result)
            copy.title = f"{p.title} {round_no}"
            result.append(copy)
    for p in result:
        p.image = best_artwork(p.image)
        p.feed_image = p.feed_image or p.image
    return result[:count]


class PodcastService:
    """Podcast search backed by the iTunes Search API."""

    def __init__(self, http: HttpClient, cache: Optional[TTLCache] = None, config: Optional[FeedConfig] = None):
        self.http = http
        self.cache = cache or TTLCache()
        self.config = config or FeedConfig()
        self.logger = logging.getLogger(__name__)

    async def _cached(self, key: str, fetch_fn) -> List[PodcastEpisode]:
        data = await self.cache.get_or_fetch(
            key,
            self.config.podcast_cache_ttl_seconds,
            lambda: self._as_dicts(fetch_fn()),
        )
        try:
            return [PodcastEpisode.from_dict(d) for d in data]
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Ignoring unreadable podcast cache entry {key}: {e}")
            await self.cache.invalidate(key)
            return []

    @staticmethod
    async def _as_dicts(episodes_coro) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in await episodes_coro]

    def _show_placeholder(self, show: Dict[str, Any]) -> PodcastEpisode:
        artwork = best_artwork(show.get("artworkUrl600"), show.get("artworkUrl100"))
        return PodcastEpisode(
            id=int(show["collectionId"]),
            title=show.get("collectionName") or "Untitled Podcast",
            description=show.get("collectionName") or "",
            url=show.get("collectionViewUrl"),
            feed_title=show.get("collectionName") or "",
            date_published=_release_date(show.get("releaseDate")),
            image=artwork,
            feed_url=show.get("feedUrl"),
            feed_image=artwork,
            categories=[show["primaryGenreName"]] if show.get("primaryGenreName") else [],
        )

    def _episode(self, episode: Dict[str, Any], show: Dict[str, Any]) -> PodcastEpisode:
        feed_image = best_artwork(show.get("artworkUrl600"), show.get("artworkUrl100"))
        return PodcastEpisode(
            id=int(episode["trackId"]),
            title=episode.get("trackName") or "Untitled Episode",
            description=episode.get("description") or show.get("collectionName") or "",
            url=episode.get("previewUrl") or episode.get("trackViewUrl"),
            feed_title=show.get("collectionName") or "",
            audio=episode.get("episodeUrl") or episode.get("previewUrl") or "",
            date_published=_release_date(episode.get("releaseDate")),
            duration=format_duration(episode.get("trackTimeMillis")),
            image=best_artwork(episode.get("artworkUrl600"), show.get("artworkUrl600"), show.get("artworkUrl100")),
            feed_url=show.get("feedUrl"),
            feed_image=feed_image,
            categories=[show["primaryGenreName"]] if show.get("primaryGenreName") else [],
        )

    async def _episodes_for(self, show: Dict[str, Any], limit: int) -> List[PodcastEpisode]:
        """Latest episodes of one show, or the show itself when it lists none."""
        try:
            data = await self.http.get_json(ITUNES_LOOKUP_URL, params={
                "id": show["collectionId"],
                "entity": "podcastEpisode",
                "limit": limit,
            })
            results = (data or {}).get("results") or []
            # The first lookup result is the show itself
            if len(results) > 1:
                return [self._episode(e, show) for e in results[1:] if isinstance(e, dict) and e.get("trackId")]
            return [self._show_placeholder(show)]
        except Exception as e:
            self.logger.error(f"Error fetching episodes for {show.get('collectionName')}: {e}")
            return []

    async def _search_shows(self, term: str, limit: int, by_genre: bool = False) -> List[Dict[str, Any]]:
        params = {
            "term": term,
            "media": "podcast",
            "entity": "podcast",
            "limit": limit,
            "country": self.config.podcast_country,
        }
        if by_genre:
            params["attribute"] = "genreIndex"
        data = await self.http.get_json(ITUNES_SEARCH_URL, params=params)
        results = (data or {}).get("results") if isinstance(data, dict) else None
        return [s for s in results or [] if isinstance(s, dict) and s.get("collectionId")]

    async def _expand(self, shows: List[Dict[str, Any]], episodes_per_show: int) -> List[PodcastEpisode]:
        per_show = await asyncio.gather(*(self._episodes_for(s, episodes_per_show) for s in shows))
        return [episode for episodes in per_show for episode in episodes]

    async def search_episodes(self, term: str, limit: int = 5) -> List[PodcastEpisode]:
        """Latest episodes of up to `limit` shows matching `term`. Never raises."""
        term = (term or "").strip()
        if not term:
            return []

        async def fetch() -> List[PodcastEpisode]:
            try:
                shows = await self._search_shows(term, SEARCH_SHOWS_LIMIT)
            except Exception as e:
                self.logger.error(f"Error searching podcast episodes for '{term}': {e}")
                return []
            episodes = await self._expand(shows[:limit], EPISODES_PER_SHOW)
            self.logger.info(f"Found {len(episodes)} podcast episodes for '{term}'")
            return episodes

        return await self._cached(f"podcasts:search:{term.lower()}:{limit}", fetch)

    async def search_by_category(self, category: str, limit: int = 5) -> List[PodcastEpisode]:
        """Episodes from shows in a genre; falls back to a plain term search."""
        category = (category or "").strip()
        if not category:
            return []
        genre = CATEGORY_MAP.get(category.lower(), category)
        fallback_term = genre

        async def fetch() -> List[PodcastEpisode]:
            nonlocal fallback_term
            try:
                shows = await self._search_shows(genre, limit, by_genre=True)
            except Exception as e:
                self.logger.error(f"Error searching podcasts by category '{genre}': {e}")
                fallback_term = category
                return []
            return await self._expand(shows, EPISODES_PER_CATEGORY_SHOW)

        episodes = await self._cached(f"podcasts:category:{genre.lower()}:{limit}", fetch)
        if episodes:
            return episodes
        self.logger.info(f"No '{genre}' genre results; searching for '{fallback_term}' instead")
        return await self.search_episodes(fallback_term, limit)

    async def related_to(self, article: Article, limit: int = 5) -> List[PodcastEpisode]:
        """Podcasts related to the article on screen, searched by its title."""
        return await self.search_episodes(article.title, limit)

    def _load_static(self, data_dir: str) -> List[PodcastEpisode]:
        with open(os.path.join(data_dir, "index.json"), "r") as f:
            index = json.load(f)

        episodes: List[PodcastEpisode] = []
        for show in index.get("podcasts") or []:
            path = os.path.join(data_dir, f"{show['id']}.json")
            try:
                with open(path, "r") as f:
                    raw = json.load(f).get("episodes") or []
                episodes.extend(_static_episode(e) for e in raw)
            except (OSError, ValueError, KeyError, TypeError) as e:
                self.logger.error(f"Error loading podcast file {path}: {e}")
        return episodes

    async def trending(self, limit: int = 10) -> List[PodcastEpisode]:
        """Pre-fetched episodes from `podcast_data_dir`, else the built-in shows."""
        data_dir = self.config.podcast_data_dir
        if data_dir:
            try:
                episodes = self._load_static(data_dir)
            except (OSError, ValueError, KeyError, TypeError) as e:
                self.logger.error(f"Error loading podcasts from {data_dir}: {e}")
                episodes = []
            if episodes:
                self.logger.info(f"Loaded {len(episodes)} episodes from {data_dir}")
                return episodes[:limit]

        self.logger.info("Falling back to built-in podcast list")
        return sample_podcasts(limit)


def _static_id(value: Any) -> int:
    """Numeric ids pass through; "<show>-<n>" style ids are hashed."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(hashlib.md5(f"podcast:{value}".encode("utf-8")).hexdigest()[:15], 16)


def _static_episode(data: Dict[str, Any]) -> PodcastEpisode:
    """
    Episode from a pre-fetched file.

    Accepts both the episode shape used elsewhere (audio, url, feedTitle,
    datePublished) and the feed-fetch script's (audioUrl, link, podcastName,
    publishDate, category).
    """
    duration = data.get("duration")
    if isinstance(duration, (int, float)):
        duration = format_duration(duration * 1000)
    categories = data.get("categories") or ([data["category"]] if data.get("category") else [])
    published = data.get("datePublished") or _release_date(data.get("publishDate"))
    return PodcastEpisode(
        id=_static_id(data["id"]),
        title=data.get("title") or "Untitled Episode",
        description=data.get("description") or "",
        url=data.get("url") or data.get("link"),
        feed_title=data.get("feedTitle") or data.get("podcastName") or "",
        audio=data.get("audio") or data.get("audioUrl") or "",
        date_published=published,
        duration=duration or "00:00",
        image=best_artwork(data.get("image"), data.get("feedImage")),
        feed_url=data.get("feedUrl"),
        feed_image=data.get("feedImage"),
        categories=list(categories),
    )
