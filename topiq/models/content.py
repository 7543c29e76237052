"""
Content models for the feed aggregator.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse


class SourceKind(str, Enum):
    """Upstream content sources an article can come from."""
    ENCYCLOPEDIA = "encyclopedia"
    LINK_AGGREGATOR = "link_aggregator"
    HISTORICAL_EVENT = "historical_event"
    TRENDING = "trending"
    SOCIAL_AGGREGATOR = "social_aggregator"
    CURRENT_EVENT = "current_event"


# Sources whose articles may legitimately lack an image
THUMBNAIL_EXEMPT_SOURCES = frozenset({SourceKind.HISTORICAL_EVENT})


def stable_id(kind: SourceKind, upstream_id: Any) -> int:
    """Derive a deterministic integer id from an upstream identifier."""
    key = f"{SourceKind(kind).value}:{upstream_id}"
    return int(hashlib.md5(key.encode("utf-8")).hexdigest()[:15], 16)


@dataclass
class Thumbnail:
    """Image descriptor attached to an article."""
    url: str
    width: Optional[int] = None
    height: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Thumbnail"]:
        if not data or not data.get("url"):
            return None
        return cls(url=data["url"], width=data.get("width"), height=data.get("height"))


@dataclass
class Article:
    """Canonical record produced by every source adapter."""

    id: int
    title: str
    body_text: str
    source_kind: SourceKind
    upstream_id: str = ""
    body_html: Optional[str] = None
    thumbnail: Optional[Thumbnail] = None
    external_url: Optional[str] = None
    description_line: Optional[str] = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Historical sources only
    year: Optional[int] = None
    date: Optional[str] = None

    labels: List[str] = field(default_factory=list)

    @property
    def has_thumbnail(self) -> bool:
        return self.thumbnail is not None and bool(self.thumbnail.url)

    def is_valid(self) -> bool:
        """Check the invariants every surfaced article must satisfy."""
        if not self.title or not self.title.strip():
            return False
        if self.source_kind in THUMBNAIL_EXEMPT_SOURCES:
            return True
        return self.has_thumbnail or bool(self.body_text and self.body_text.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body_text": self.body_text,
            "source_kind": self.source_kind.value,
            "upstream_id": self.upstream_id,
            "body_html": self.body_html,
            "thumbnail": self.thumbnail.to_dict() if self.thumbnail else None,
            "external_url": self.external_url,
            "description_line": self.description_line,
            "fetched_at": self.fetched_at.isoformat(),
            "year": self.year,
            "date": self.date,
            "labels": list(self.labels),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Article":
        fetched_at = data.get("fetched_at")
        if isinstance(fetched_at, str):
            fetched_at = isoparse(fetched_at)
        elif not isinstance(fetched_at, datetime):
            fetched_at = datetime.now(timezone.utc)

        return cls(
            id=int(data["id"]),
            title=data.get("title") or "",
            body_text=data.get("body_text") or "",
            source_kind=SourceKind(data["source_kind"]),
            upstream_id=str(data.get("upstream_id") or ""),
            body_html=data.get("body_html"),
            thumbnail=Thumbnail.from_dict(data.get("thumbnail")),
            external_url=data.get("external_url"),
            description_line=data.get("description_line"),
            fetched_at=fetched_at,
            year=data.get("year"),
            date=data.get("date"),
            labels=list(data.get("labels") or []),
        )

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        if not isinstance(other, Article):
            return False
        return self.id == other.id


@dataclass
class PodcastEpisode:
    """A playable podcast episode, or a show placeholder when no episodes are listed."""
    id: int
    title: str
    description: str
    url: Optional[str]
    feed_title: str
    audio: str = ""
    date_published: Optional[str] = None
    duration: str = "00:00"
    image: Optional[str] = None
    feed_url: Optional[str] = None
    feed_image: Optional[str] = None
    categories: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "url": self.url,
            "feed_title": self.feed_title,
            "audio": self.audio,
            "date_published": self.date_published,
            "duration": self.duration,
            "image": self.image,
            "feed_url": self.feed_url,
            "feed_image": self.feed_image,
            "categories": list(self.categories),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PodcastEpisode":
        return cls(
            id=int(data["id"]),
            title=data.get("title") or "",
            description=data.get("description") or "",
            url=data.get("url"),
            feed_title=data.get("feed_title") or "",
            audio=data.get("audio") or "",
            date_published=data.get("date_published"),
            duration=data.get("duration") or "00:00",
            image=data.get("image"),
            feed_url=data.get("feed_url"),
            feed_image=data.get("feed_image"),
            categories=list(data.get("categories") or []),
        )
