"""
Quality Scorer for ranking candidate articles.
Scores articles by content completeness and image quality, and filters out
low-quality items while guaranteeing a non-empty result for non-empty input.
"""

import logging
import math
from typing import List, Optional, Tuple

from topiq.config import FeedConfig
from topiq.models.content import Article, SourceKind


class QualityScorer:
    """
    Service for scoring and filtering articles on a 0-100 scale.
    """

    MAX_SCORE = 100.0

    def __init__(self, config: Optional[FeedConfig] = None):
        self.logger = logging.getLogger(__name__)
        config = config or FeedConfig()

        self.min_quality_score = config.min_quality_score
        self.keep_ratio = config.quality_keep_ratio
        self.fallback_ratio = config.quality_fallback_ratio
        self.floor = config.quality_floor

    def _resolution_bonus(self, article: Article) -> float:
        if not article.thumbnail or not article.thumbnail.width:
            return 0.0
        width = article.thumbnail.width
        if width >= 800:
            return 15.0
        if width >= 500:
            return 10.0
        if width >= 300:
            return 5.0
        return 0.0

    def score(self, article: Article) -> float:
        """
        Score a single article.

        Returns a score from 0-100: title and body length, image presence and
        resolution, description line, plus per-source adjustments.
        """
        title_len = len((article.title or "").strip())
        body_len = len((article.body_text or "").strip())

        score = min(10.0, max(1.0, title_len / 5))
        score += min(40.0, body_len / 20)

        if article.has_thumbnail:
            score += 20.0
            score += self._resolution_bonus(article)

        if article.description_line and article.description_line.strip():
            score += 5.0

        if article.source_kind == SourceKind.SOCIAL_AGGREGATOR and body_len < 100:
            score -= 10.0
        elif article.source_kind == SourceKind.HISTORICAL_EVENT and article.year is not None:
            score += 15.0

        return max(0.0, min(self.MAX_SCORE, score))

    def rank(self, articles: List[Article]) -> List[Tuple[Article, float]]:
        """
        Score and rank a list of articles.

        Returns a list of (article, score) tuples sorted by score descending.
        Ties keep their input order.
        """
        scored = [(article, self.score(article)) for article in articles]
        scored.sort(key=lambda x: x[1], reverse=True)
        return scored

    def filter_by_quality(self, articles: List[Article], min_score: Optional[float] = None) -> List[Article]:
        """
        Filter articles by minimum quality score.

        Args:
            articles: Candidate articles
            min_score: Minimum score required (uses config default if not specified)

        Returns:
            Articles meeting the threshold, in input order. When too few pass,
            the best-scoring articles instead, so non-empty input always gives
            non-empty output.
        """
        if not articles:
            return []
        if min_score is None:
            min_score = self.min_quality_score

        n = len(articles)
        scores = [self.score(article) for article in articles]
        kept = [article for article, s in zip(articles, scores) if s >= min_score]

        floor = min(self.floor, n)
        if len(kept) >= self.keep_ratio * n and len(kept) >= floor:
            self.logger.debug(f"Filtered {n} articles to {len(kept)} with min_score={min_score}")
            return kept

        fallback_size = max(math.ceil(self.fallback_ratio * n), floor)
        ranked = sorted(range(n), key=lambda i: scores[i], reverse=True)[:fallback_size]
        # Keep the chosen articles in their original order
        fallback = [articles[i] for i in sorted(ranked)]

        self.logger.info(
            f"Only {len(kept)}/{n} articles scored >= {min_score}; "
            f"falling back to top {len(fallback)} by score"
        )
        return fallback
