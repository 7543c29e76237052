"""
Image normalizer: rewrite thumbnail URLs to higher-resolution variants.

Pure string rewriting, no network access. Rules are evaluated in order and
the first one whose matcher accepts the URL wins. Every rewrite is idempotent
so normalizing an already-normalized thumbnail changes nothing.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from topiq.models.content import Thumbnail


logger = logging.getLogger(__name__)

ENCYCLOPEDIA_WIDTH = 600
ARTWORK_SIZE = 1200
LOGO_SIZE = 300

_SIZE_PARAMS = {"w", "h", "width", "height", "size", "quality", "q", "resize", "compress", "fit", "crop"}
_THUMB_SIZE_SEGMENT = re.compile(r"^\d+px-")
_ARTWORK_DIMENSIONS = re.compile(r"/\d+x\d+")
_IMGUR_SIZE_SUFFIX = re.compile(r"^/([A-Za-z0-9]{7})[sbtmlh]\.(jpe?g|png|gif|webp)$", re.IGNORECASE)


@dataclass(frozen=True)
class ImageRule:
    name: str
    matches: Callable[[str], bool]
    rewrite: Callable[[Thumbnail], Thumbnail]


def _host(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def _host_matches(*domains: str) -> Callable[[str], bool]:
    def matcher(url: str) -> bool:
        host = _host(url)
        return any(host == d or host.endswith("." + d) for d in domains)
    return matcher


def _rebuild(url: str, path: Optional[str] = None, query: Optional[List[Tuple[str, str]]] = None) -> str:
    parts = urlsplit(url)
    new_path = parts.path if path is None else path
    new_query = parts.query if query is None else urlencode(query)
    return urlunsplit((parts.scheme, parts.netloc, new_path, new_query, parts.fragment))


def _query_without(url: str, drop: set) -> List[Tuple[str, str]]:
    return [(k, v) for k, v in parse_qsl(urlsplit(url).query, keep_blank_values=True) if k.lower() not in drop]


def _set_params(params: List[Tuple[str, str]], **values: str) -> List[Tuple[str, str]]:
    kept = [(k, v) for k, v in params if k not in values]
    return kept + sorted(values.items())


def _rewrite_encyclopedia(thumb: Thumbnail) -> Thumbnail:
    """Strip the /thumb/ size constraint and request a fixed-width WebP."""
    parts = urlsplit(thumb.url)
    segments = parts.path.split("/")
    if "thumb" in segments and len(segments) > 1 and _THUMB_SIZE_SEGMENT.match(segments[-1]):
        segments = segments[:-1]
        segments.remove("thumb")
    path = "/".join(segments)

    params = _set_params(_query_without(thumb.url, _SIZE_PARAMS | {"format", "cb"}),
                         width=str(ENCYCLOPEDIA_WIDTH), format="webp")
    return Thumbnail(url=_rebuild(thumb.url, path=path, query=params), width=ENCYCLOPEDIA_WIDTH, height=thumb.height)


def _rewrite_social_media(thumb: Thumbnail) -> Thumbnail:
    """Remove size/compression constraints, prefer WebP."""
    url = thumb.url.replace("&amp;", "&")
    params = _query_without(url, _SIZE_PARAMS)
    already_webp = urlsplit(url).path.lower().endswith(".webp") or any(
        k == "format" and v.startswith("webp") for k, v in params
    )
    if not already_webp:
        params = _set_params(params, format="webp")
    return Thumbnail(url=_rebuild(url, query=params), width=thumb.width, height=thumb.height)


def _rewrite_artwork(thumb: Thumbnail) -> Thumbnail:
    """Substitute the NxN dimension token with the largest artwork size."""
    url = _ARTWORK_DIMENSIONS.sub(f"/{ARTWORK_SIZE}x{ARTWORK_SIZE}", thumb.url, count=1)
    return Thumbnail(url=url, width=ARTWORK_SIZE, height=ARTWORK_SIZE)


def _rewrite_logo(thumb: Thumbnail) -> Thumbnail:
    params = _set_params(_query_without(thumb.url, _SIZE_PARAMS | {"format"}), size=str(LOGO_SIZE), format="png")
    return Thumbnail(url=_rebuild(thumb.url, query=params), width=LOGO_SIZE, height=LOGO_SIZE)


def _rewrite_generic(thumb: Thumbnail) -> Thumbnail:
    """Drop size/quality query parameters and imgur size suffixes."""
    path = urlsplit(thumb.url).path
    if _host(thumb.url).endswith("imgur.com"):
        path = _IMGUR_SIZE_SUFFIX.sub(r"/\1.\2", path)
    params = _query_without(thumb.url, _SIZE_PARAMS)
    return Thumbnail(url=_rebuild(thumb.url, path=path, query=params), width=thumb.width, height=thumb.height)


IMAGE_RULES: List[ImageRule] = [
    ImageRule("encyclopedia", _host_matches("wikimedia.org", "wikipedia.org"), _rewrite_encyclopedia),
    ImageRule("social_aggregator", _host_matches("redd.it", "reddit.com", "redditmedia.com"), _rewrite_social_media),
    ImageRule("podcast_artwork", _host_matches("mzstatic.com"), _rewrite_artwork),
    ImageRule("logo_service", _host_matches("clearbit.com"), _rewrite_logo),
    ImageRule("generic_host", _host_matches("imgur.com", "images.unsplash.com"), _rewrite_generic),
]


def upscale(thumbnail: Optional[Thumbnail], rules: Optional[List[ImageRule]] = None) -> Optional[Thumbnail]:
    """Return the higher-resolution variant of `thumbnail`, or it unchanged."""
    if thumbnail is None or not thumbnail.url:
        return thumbnail

    for rule in rules if rules is not None else IMAGE_RULES:
        try:
            if rule.matches(thumbnail.url):
                return rule.rewrite(thumbnail)
        except ValueError as e:
            # Malformed URL; leave it alone
            logger.debug(f"Image rule {rule.name} failed for {thumbnail.url}: {e}")
            return thumbnail
    return thumbnail
