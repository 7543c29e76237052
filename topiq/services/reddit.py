"""
Social aggregator adapter: image posts from a set of subreddits.
"""

from typing import Any, Dict, List, Optional

from topiq.models.content import Article, SourceKind, Thumbnail, stable_id
from topiq.services.source_adapter import SourceAdapter
from topiq.utils.error_monitoring import AdapterFailure


SUBREDDITS = ["todayilearned", "science", "worldnews", "technology", "history", "pics", "EarthPorn", "space"]
LISTING_URL = "https://www.reddit.com/r/{subreddits}.json"
MAX_LISTING_LIMIT = 100
MAX_EXTRACT_LENGTH = 500


def best_preview_image(preview: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Pick the widest image among the source, its resolutions and the gif variant."""
    images = preview.get("images") if isinstance(preview, dict) else None
    if not images or not isinstance(images[0], dict):
        return None
    image = images[0]
    best = image.get("source")
    if not isinstance(best, dict) or not best.get("url"):
        return None

    candidates = list(image.get("resolutions") or [])
    gif = ((image.get("variants") or {}).get("gif") or {}).get("source")
    if gif:
        candidates.append(gif)
    for candidate in candidates:
        if isinstance(candidate, dict) and candidate.get("url") and (candidate.get("width") or 0) > (best.get("width") or 0):
            best = candidate
    return best


class RedditAdapter(SourceAdapter):
    """Top posts that carry a preview image. NSFW posts are skipped."""

    kind = SourceKind.SOCIAL_AGGREGATOR

    def __init__(self, http, cache=None, config=None, subreddits: Optional[List[str]] = None):
        super().__init__(http, cache, config)
        self.subreddits = subreddits or list(SUBREDDITS)

    def post_to_article(self, post: Dict[str, Any]) -> Optional[Article]:
        data = post.get("data") if isinstance(post, dict) else None
        if not isinstance(data, dict):
            return None
        title = (data.get("title") or "").strip()
        post_id = data.get("id")
        if not title or not post_id or data.get("over_18"):
            return None

        image = best_preview_image(data.get("preview") or {})
        if image is None:
            return None
        thumbnail = Thumbnail(
            url=image["url"].replace("&amp;", "&"),
            width=image.get("width"),
            height=image.get("height"),
        )

        byline = f"Posted by u/{data.get('author')} in r/{data.get('subreddit')}"
        selftext = (data.get("selftext") or "").strip()
        if selftext:
            extract = selftext[:MAX_EXTRACT_LENGTH] + ("..." if len(selftext) > MAX_EXTRACT_LENGTH else "")
        else:
            extract = byline

        permalink = data.get("permalink")
        return Article(
            id=stable_id(self.kind, int(post_id, 36)),
            upstream_id=post_id,
            title=title,
            body_text=extract,
            thumbnail=thumbnail,
            source_kind=self.kind,
            external_url=f"https://www.reddit.com{permalink}" if permalink else data.get("url"),
            description_line=byline,
            labels=["social", str(data.get("subreddit") or "").lower()],
        )

    async def _fetch_articles(self, count: int, query: Optional[str]) -> List[Article]:
        url = LISTING_URL.format(subreddits="+".join(self.subreddits))
        data = await self._get_json(url, params={"limit": min(self.raw_count(count), MAX_LISTING_LIMIT)})
        children = ((data or {}).get("data") or {}).get("children") if isinstance(data, dict) else None
        if not isinstance(children, list):
            raise AdapterFailure(self.name, "malformed listing response")

        articles = []
        for post in children:
            try:
                article = self.post_to_article(post)
            except (ValueError, TypeError, AttributeError, KeyError) as e:
                self.logger.debug(f"{self.name}: skipping malformed post: {e}")
                continue
            if article is not None:
                articles.append(article)
        return articles
