"""
Bookmark service: liked/saved articles and recently viewed history.

State is kept in memory and written through to the key-value store. A store
failure never loses the in-memory state; it is logged and the service keeps
working for the rest of the session.
"""

import json
import logging
import time
from typing import Callable, Dict, List, Optional, Set

from topiq.models.content import Article
from topiq.services.cache_service import KEY_LIKED, KEY_SAVED_ARTICLES, KEY_VIEWED_ARTICLES, KeyValueStore
from topiq.utils.error_monitoring import StorageFailure


MAX_VIEWED_ARTICLES = 100

LikeObserver = Callable[[int, bool], None]


class BookmarkService:
    """Tracks liked articles and viewing history for one user."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._saved: Dict[int, dict] = {}
        self._liked: Set[int] = set()
        self._viewed: List[dict] = []
        self._observers: List[LikeObserver] = []
        self._loaded = False

    async def _read_json(self, key: str, default):
        try:
            raw = await self.store.get(key)
        except StorageFailure as e:
            self.logger.warning(f"Could not read {key}: {e}")
            return default
        if not raw:
            return default
        try:
            return json.loads(raw)
        except ValueError as e:
            self.logger.warning(f"Discarding corrupt {key}: {e}")
            return default

    async def _write_json(self, key: str, value) -> None:
        try:
            await self.store.set(key, json.dumps(value))
        except StorageFailure as e:
            self.logger.warning(f"Could not persist {key}; keeping in-memory state: {e}")

    async def load(self) -> None:
        """Load saved, liked and viewed state from the store (once)."""
        if self._loaded:
            return
        saved = await self._read_json(KEY_SAVED_ARTICLES, [])
        liked = await self._read_json(KEY_LIKED, [])
        viewed = await self._read_json(KEY_VIEWED_ARTICLES, [])

        self._saved = {int(entry["id"]): entry for entry in saved if isinstance(entry, dict) and "id" in entry}
        self._liked = {int(i) for i in liked if isinstance(i, (int, str)) and str(i).lstrip("-").isdigit()}
        self._viewed = [entry for entry in viewed if isinstance(entry, dict) and "id" in entry][:MAX_VIEWED_ARTICLES]
        self._loaded = True
        self.logger.debug(f"Loaded {len(self._saved)} saved, {len(self._liked)} liked, {len(self._viewed)} viewed")

    # Likes

    def subscribe(self, callback: LikeObserver) -> Callable[[], None]:
        """Register `callback(article_id, liked)`; returns a function that unregisters it."""
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def _notify(self, article_id: int, liked: bool) -> None:
        for callback in list(self._observers):
            try:
                callback(article_id, liked)
            except Exception as e:
                self.logger.error(f"Like observer failed for article {article_id}: {e}")

    async def like(self, article: Article, emoji: Optional[str] = None) -> None:
        await self.load()
        if article.id in self._liked:
            return
        entry = article.to_dict()
        entry["saved_at"] = self.clock()
        if emoji:
            entry["emoji"] = emoji
        self._saved[article.id] = entry
        self._liked.add(article.id)
        await self._persist_likes()
        self._notify(article.id, True)

    async def unlike(self, article_id: int) -> None:
        await self.load()
        if article_id not in self._liked and article_id not in self._saved:
            return
        self._liked.discard(article_id)
        self._saved.pop(article_id, None)
        await self._persist_likes()
        self._notify(article_id, False)

    async def toggle_like(self, article: Article) -> bool:
        """Flip the liked state of `article`; returns the new state."""
        await self.load()
        if article.id in self._liked:
            await self.unlike(article.id)
            return False
        await self.like(article)
        return True

    async def _persist_likes(self) -> None:
        await self._write_json(KEY_SAVED_ARTICLES, list(self._saved.values()))
        await self._write_json(KEY_LIKED, sorted(self._liked))

    def is_liked(self, article_id: int) -> bool:
        return article_id in self._liked

    async def get_liked_ids(self) -> Set[int]:
        await self.load()
        return set(self._liked)

    async def get_saved_articles(self) -> List[Article]:
        """Saved articles, oldest first."""
        await self.load()
        entries = sorted(self._saved.values(), key=lambda e: e.get("saved_at") or 0)
        return [Article.from_dict(e) for e in entries]

    # Viewing history

    async def mark_viewed(self, article: Article) -> None:
        """Record a view; the history keeps the most recent 100, newest first."""
        await self.load()
        entry = article.to_dict()
        entry["viewed_at"] = self.clock()
        self._viewed = [entry] + [e for e in self._viewed if int(e["id"]) != article.id]
        del self._viewed[MAX_VIEWED_ARTICLES:]
        await self._write_json(KEY_VIEWED_ARTICLES, self._viewed)

    async def get_viewed_articles(self) -> List[Article]:
        await self.load()
        return [Article.from_dict(e) for e in self._viewed]

    async def clear_viewed(self) -> None:
        await self.load()
        self._viewed = []
        try:
            await self.store.remove(KEY_VIEWED_ARTICLES)
        except StorageFailure as e:
            self.logger.warning(f"Could not clear viewed history: {e}")
