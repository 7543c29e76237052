import asyncio
import logging
import math
import random
from typing import Any, Dict, Iterable, List, Mapping, Optional

from topiq.config import FeedConfig
from topiq.models.content import Article, SourceKind
from topiq.services.quality_scorer import QualityScorer
from topiq.services.source_adapter import FetchResult, SourceAdapter
from topiq.utils.error_monitoring import BatchTotalFailure, CircuitBreaker
from topiq.utils.logging_config import PerformanceTracker, log_pipeline_metrics

TOPIC_VALIDATION_COUNT = 5


class MultiSourceAggregator:
    """
    Parallel multi-source fetching with quality filtering and source balancing.
    """

    def __init__(
        self,
        adapters: Mapping[SourceKind, SourceAdapter],
        config: Optional[FeedConfig] = None,
        scorer: Optional[QualityScorer] = None,
        breaker: Optional[CircuitBreaker] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.adapters: Dict[SourceKind, SourceAdapter] = dict(adapters)
        self.config = config or FeedConfig()
        self.scorer = scorer or QualityScorer(self.config)
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=self.config.breaker_failure_threshold,
            recovery_timeout=self.config.breaker_recovery_seconds,
        )
        self.rng = rng or random.Random()
        self.logger = logging.getLogger(__name__)

        # Running per-source totals; the aggregator lives as long as the session
        self._source_stats: Dict[str, Dict[str, Any]] = {}

    def _inflated_count(self, kind: SourceKind, count: int) -> int:
        multiplier = self.config.policy(kind).multiplier
        return max(count, math.ceil(count * multiplier))

    async def _run_adapter(self, kind: SourceKind, count: int, query: Optional[str]) -> FetchResult:
        """Run a single adapter; adapters already bound their own time."""
        adapter = self.adapters[kind]
        result = await adapter.fetch_result(count, query)
        if result.error:
            self.logger.warning(f"✗ {kind.value} failed: {result.error} ({len(result.articles)} fallback articles)",
                                extra={"source": kind.value})
        else:
            self.logger.info(f"✓ {kind.value} completed: {len(result.articles)} articles in {result.fetch_time:.2f}s",
                             extra={"source": kind.value})
        return result

    async def fetch_batch(
        self,
        requested_counts: Mapping[Any, int],
        query: Optional[str] = None,
        exclude_ids: Optional[Iterable[int]] = None,
        strict: bool = False,
    ) -> List[Article]:
        """
        Fetch one balanced batch of articles.

        Args:
            requested_counts: Wanted articles per source kind
            query: Optional topic passed to every adapter
            exclude_ids: Article ids to drop (already shown to the user)
            strict: Raise BatchTotalFailure instead of returning [] when
                adapters failed and nothing at all was produced

        Returns:
            At most sum(requested_counts) unique articles in random order
        """
        requested: Dict[SourceKind, int] = {}
        for kind, count in requested_counts.items():
            if count and int(count) > 0:
                requested[SourceKind(kind)] = int(count)
        if not requested:
            return []

        errors: Dict[str, str] = {}
        runnable: List[SourceKind] = []
        for kind in requested:
            if kind not in self.adapters:
                self.logger.warning(f"No adapter configured for {kind.value}; skipping")
                errors[kind.value] = "no adapter configured"
            elif not self.breaker.should_attempt(kind.value):
                self.logger.info(f"Circuit open for {kind.value}; skipping this batch")
                errors[kind.value] = "circuit open"
            else:
                runnable.append(kind)

        with PerformanceTracker("fetch_batch", self.logger) as tracker:
            results = await asyncio.gather(
                *(self._run_adapter(kind, self._inflated_count(kind, requested[kind]), query) for kind in runnable),
                return_exceptions=True,
            )

            fetch_results: List[FetchResult] = []
            for kind, result in zip(runnable, results):
                if isinstance(result, Exception):
                    self.logger.error(f"Adapter {kind.value} raised: {result}")
                    result = FetchResult(kind, [], 0.0, error=str(result) or type(result).__name__)
                fetch_results.append(result)
                self._record_stats(result)
                if result.failed:
                    errors[kind.value] = result.error
                    self.breaker.record_failure(kind.value)
                else:
                    self.breaker.record_success(kind.value)

            produced = sum(len(r.articles) for r in fetch_results)
            if produced == 0:
                if errors and strict:
                    raise BatchTotalFailure(list(errors), errors)
                if errors:
                    self.logger.error(f"All sources failed for this batch: {', '.join(errors)}")
                return []
            if errors:
                self.logger.warning(f"Partial batch: {len(errors)} of {len(requested)} sources failed")

            merged = self._merge(fetch_results, set(exclude_ids or ()))
            filtered = self.scorer.filter_by_quality(merged) if merged else []
            batch = self._rebalance(filtered, requested)

        log_pipeline_metrics(
            self.logger, "fetch_batch", produced, len(batch), tracker.duration_ms,
            merged=len(merged), filtered=len(filtered), failed_sources=sorted(errors),
        )
        return batch

    def _merge(self, results: List[FetchResult], exclude_ids: set) -> List[Article]:
        """Concatenate results dropping invalid, excluded and duplicate articles (first wins)."""
        seen = set()
        merged = []
        for result in results:
            for article in result.articles:
                if article.id in seen or article.id in exclude_ids or not article.is_valid():
                    continue
                seen.add(article.id)
                merged.append(article)
        return merged

    def _rebalance(self, articles: List[Article], requested: Dict[SourceKind, int]) -> List[Article]:
        """Draw each source's share at random, fill any shortfall from the leftovers, shuffle."""
        pools: Dict[SourceKind, List[Article]] = {}
        for article in articles:
            pools.setdefault(article.source_kind, []).append(article)

        selected: List[Article] = []
        leftovers: List[Article] = []
        for kind, want in requested.items():
            pool = pools.pop(kind, [])
            self.rng.shuffle(pool)
            selected.extend(pool[:want])
            leftovers.extend(pool[want:])
        for pool in pools.values():
            leftovers.extend(pool)

        shortfall = sum(requested.values()) - len(selected)
        if shortfall > 0 and leftovers:
            self.rng.shuffle(leftovers)
            selected.extend(leftovers[:shortfall])

        self.rng.shuffle(selected)
        return selected

    def calculate_source_distribution(self, total: int) -> Dict[SourceKind, int]:
        """Split `total` across enabled sources by weight; the remainder goes to the encyclopedia."""
        if total <= 0:
            return {}
        weights = {
            kind: self.config.policy(kind).weight
            for kind in self.config.enabled_sources()
            if kind in self.adapters and self.config.policy(kind).weight > 0
        }
        if not weights:
            return {}

        weight_sum = sum(weights.values())
        distribution = {kind: int(total * w / weight_sum) for kind, w in weights.items()}
        remainder = total - sum(distribution.values())
        if remainder:
            target = SourceKind.ENCYCLOPEDIA if SourceKind.ENCYCLOPEDIA in weights else max(weights, key=weights.get)
            distribution[target] += remainder
        return {kind: n for kind, n in distribution.items() if n > 0}

    async def validate_topic(self, topic: str) -> bool:
        """True when an encyclopedia search for `topic` finds at least one usable article."""
        topic = (topic or "").strip()
        adapter = self.adapters.get(SourceKind.ENCYCLOPEDIA)
        if not topic or adapter is None:
            return False

        result = await adapter.fetch_result(TOPIC_VALIDATION_COUNT, topic)
        valid = bool(result.articles) and not result.used_fallback
        self.logger.info(f"Topic '{topic}' {'is' if valid else 'is not'} searchable")
        return valid

    def _record_stats(self, result: FetchResult) -> None:
        src_stats = self._source_stats.setdefault(
            result.source.value, {"count": 0, "articles": 0, "time": 0.0, "errors": 0}
        )
        src_stats["count"] += 1
        src_stats["articles"] += len(result.articles)
        src_stats["time"] += float(result.fetch_time)
        if result.failed:
            src_stats["errors"] += 1

    def get_fetch_statistics(self) -> Dict[str, Any]:
        sources = {src: dict(s) for src, s in self._source_stats.items()}
        return {"sources": sources, "total_errors": sum(s["errors"] for s in sources.values())}
