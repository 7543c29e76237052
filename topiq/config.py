"""
Configuration for the topiq feed aggregator.

Defaults live in the dataclasses below. `load_config()` overlays values from
the environment (a `.env` file is honoured) and, optionally, a JSON file with
per-source policies pointed to by TOPIQ_SOURCES_POLICY.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from topiq.models.content import SourceKind


logger = logging.getLogger(__name__)


@dataclass
class SourcePolicy:
    """Per-source tuning knobs."""
    weight: float = 10.0            # share of a batch when distributing by weight
    multiplier: float = 2.0         # aggregator over-request factor
    over_fetch: float = 3.0         # adapter-internal raw over-fetch factor
    cache_ttl_seconds: float = 300.0
    min_extract_length: int = 0
    min_thumbnail_width: int = 0
    requires_thumbnail: bool = False
    enabled: bool = True


def default_source_policies() -> Dict[SourceKind, SourcePolicy]:
    return {
        SourceKind.ENCYCLOPEDIA: SourcePolicy(
            weight=35,
            over_fetch=2.0,
            cache_ttl_seconds=0,  # random draws must not repeat
            min_extract_length=100,
            min_thumbnail_width=300,
            requires_thumbnail=True,
        ),
        SourceKind.CURRENT_EVENT: SourcePolicy(
            weight=10,
            cache_ttl_seconds=10 * 60,
        ),
        SourceKind.HISTORICAL_EVENT: SourcePolicy(
            weight=5,
            multiplier=1.0,  # limited daily content, don't overfetch
            cache_ttl_seconds=12 * 60 * 60,
        ),
        SourceKind.LINK_AGGREGATOR: SourcePolicy(
            weight=10,
            cache_ttl_seconds=5 * 60,
        ),
        SourceKind.TRENDING: SourcePolicy(
            weight=20,
            cache_ttl_seconds=30 * 60,
        ),
        SourceKind.SOCIAL_AGGREGATOR: SourcePolicy(
            weight=20,
            over_fetch=10.0,
            cache_ttl_seconds=5 * 60,
            min_thumbnail_width=300,
            requires_thumbnail=True,
        ),
    }


DEFAULT_TOPICS = [
    "science", "history", "space", "art", "technology",
    "geography", "music", "architecture", "biology", "mathematics",
]


@dataclass
class FeedConfig:
    """Feed session, aggregation and quality configuration."""

    # Feed session
    initial_count: int = 20
    batch_size: int = 20
    near_end_threshold: int = 5
    poll_interval_seconds: float = 15.0
    refresh_interval_seconds: float = 2 * 60 * 60
    max_cached_articles: int = 100
    search_cache_ttl_seconds: float = 60 * 60  # topic searches are static reference lookups

    # Podcasts
    podcast_cache_ttl_seconds: float = 30 * 60
    podcast_country: str = "US"
    podcast_data_dir: Optional[str] = None  # directory with index.json + <show>.json episode files

    # Quality scoring
    min_quality_score: float = 30.0
    quality_keep_ratio: float = 0.3
    quality_fallback_ratio: float = 0.4
    quality_floor: int = 5

    # Upstream access
    adapter_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 4.0
    max_concurrent_requests: int = 10
    max_fetch_attempts: int = 2
    user_agent: str = "topiq/1.0 (content feed aggregator)"
    use_offline_fallbacks: bool = True

    # Circuit breaker
    breaker_failure_threshold: int = 3
    breaker_recovery_seconds: float = 120.0

    # Storage
    database_path: str = "data/topiq.db"

    topics: List[str] = field(default_factory=lambda: list(DEFAULT_TOPICS))
    sources: Dict[SourceKind, SourcePolicy] = field(default_factory=default_source_policies)

    def policy(self, kind: SourceKind) -> SourcePolicy:
        return self.sources.get(kind) or SourcePolicy()

    def enabled_sources(self) -> List[SourceKind]:
        return [kind for kind, policy in self.sources.items() if policy.enabled]


# Environment variable -> FeedConfig attribute
_ENV_FIELDS = {
    "TOPIQ_INITIAL_COUNT": "initial_count",
    "TOPIQ_BATCH_SIZE": "batch_size",
    "TOPIQ_NEAR_END_THRESHOLD": "near_end_threshold",
    "TOPIQ_POLL_INTERVAL": "poll_interval_seconds",
    "TOPIQ_REFRESH_INTERVAL": "refresh_interval_seconds",
    "TOPIQ_MAX_CACHED_ARTICLES": "max_cached_articles",
    "TOPIQ_SEARCH_CACHE_TTL": "search_cache_ttl_seconds",
    "TOPIQ_PODCAST_CACHE_TTL": "podcast_cache_ttl_seconds",
    "TOPIQ_PODCAST_COUNTRY": "podcast_country",
    "TOPIQ_PODCAST_DATA_DIR": "podcast_data_dir",
    "TOPIQ_MIN_QUALITY_SCORE": "min_quality_score",
    "TOPIQ_ADAPTER_TIMEOUT": "adapter_timeout_seconds",
    "TOPIQ_REQUEST_TIMEOUT": "request_timeout_seconds",
    "TOPIQ_MAX_CONCURRENT_REQUESTS": "max_concurrent_requests",
    "TOPIQ_MAX_FETCH_ATTEMPTS": "max_fetch_attempts",
    "TOPIQ_USER_AGENT": "user_agent",
    "TOPIQ_USE_OFFLINE_FALLBACKS": "use_offline_fallbacks",
    "TOPIQ_DATABASE_PATH": "database_path",
}


def _coerce(value: str, current: Any) -> Any:
    if isinstance(current, bool):
        return value.lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def load_source_policies(path: str, base: Optional[Dict[SourceKind, SourcePolicy]] = None) -> Dict[SourceKind, SourcePolicy]:
    """Merge a JSON policy file over the given (or default) policies.

    The file maps source kind names to partial SourcePolicy objects, e.g.
    ``{"social_aggregator": {"weight": 0, "enabled": false}}``.
    """
    policies = dict(base or default_source_policies())
    try:
        with open(path, "r") as f:
            raw = json.load(f)
    except Exception as e:
        logger.warning(f"Failed to load source policies from {path}: {e}")
        return policies

    known = {f.name for f in fields(SourcePolicy)}
    for name, overrides in raw.items():
        try:
            kind = SourceKind(name)
        except ValueError:
            logger.warning(f"Ignoring policy for unknown source '{name}'")
            continue
        if not isinstance(overrides, dict):
            continue
        valid = {k: v for k, v in overrides.items() if k in known}
        policies[kind] = replace(policies.get(kind, SourcePolicy()), **valid)

    logger.info(f"Loaded source policies from {path}")
    return policies


def load_config(env_file: Optional[str] = None) -> FeedConfig:
    """Build a FeedConfig from defaults, the environment and optional policy file."""
    load_dotenv(env_file)
    config = FeedConfig()

    for env_name, attr in _ENV_FIELDS.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            setattr(config, attr, _coerce(raw, getattr(config, attr)))
        except ValueError:
            logger.warning(f"Invalid value for {env_name}: {raw!r}; keeping {getattr(config, attr)!r}")

    topics = os.getenv("TOPIQ_TOPICS")
    if topics:
        config.topics = [t.strip() for t in topics.split(",") if t.strip()]

    policy_path = os.getenv("TOPIQ_SOURCES_POLICY")
    if policy_path:
        config.sources = load_source_policies(policy_path, config.sources)

    return config
