"""
Source Adapter Factory

Builds the adapter for each configured source kind, sharing one HTTP client
and one TTL cache between them.
"""

import logging
from typing import Dict, Optional, Type

from topiq.config import FeedConfig
from topiq.models.content import SourceKind
from topiq.services.cache_service import TTLCache
from topiq.services.current_events import CurrentEventsAdapter
from topiq.services.hackernews import HackerNewsAdapter
from topiq.services.http_client import HttpClient
from topiq.services.onthisday import OnThisDayAdapter
from topiq.services.reddit import RedditAdapter
from topiq.services.source_adapter import SourceAdapter
from topiq.services.trending import TrendingAdapter
from topiq.services.wikipedia import WikipediaAdapter


ADAPTER_CLASSES: Dict[SourceKind, Type[SourceAdapter]] = {
    SourceKind.ENCYCLOPEDIA: WikipediaAdapter,
    SourceKind.LINK_AGGREGATOR: HackerNewsAdapter,
    SourceKind.HISTORICAL_EVENT: OnThisDayAdapter,
    SourceKind.TRENDING: TrendingAdapter,
    SourceKind.SOCIAL_AGGREGATOR: RedditAdapter,
    SourceKind.CURRENT_EVENT: CurrentEventsAdapter,
}


class SourceAdapterFactory:
    """
    Factory for creating source adapters.

    Supported kinds are the keys of ADAPTER_CLASSES. Disabled sources (see
    SourcePolicy.enabled) are skipped by `create_all`.
    """

    @staticmethod
    def create_adapter(
        kind: SourceKind,
        http: HttpClient,
        cache: Optional[TTLCache] = None,
        config: Optional[FeedConfig] = None,
    ) -> SourceAdapter:
        """
        Create the adapter for one source kind.

        Raises:
            ValueError: If the kind has no adapter
        """
        try:
            adapter_cls = ADAPTER_CLASSES[SourceKind(kind)]
        except (KeyError, ValueError):
            raise ValueError(f"Unknown source kind: {kind}")
        return adapter_cls(http, cache, config)

    @staticmethod
    def create_all(
        http: HttpClient,
        cache: Optional[TTLCache] = None,
        config: Optional[FeedConfig] = None,
    ) -> Dict[SourceKind, SourceAdapter]:
        """Create adapters for every enabled source in the config."""
        config = config or FeedConfig()
        cache = cache or TTLCache()
        logger = logging.getLogger(__name__)

        adapters = {}
        for kind in config.enabled_sources():
            adapters[kind] = SourceAdapterFactory.create_adapter(kind, http, cache, config)
        logger.info(f"Created {len(adapters)} source adapters: {', '.join(k.value for k in adapters)}")
        return adapters
