"""Blend community metrics with externally attested metrics."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import asdict, dataclass

import structlog

from priceoracle.attestation.client import ExternalMetricsRecord
from priceoracle.clock import now_ms
from priceoracle.metrics.aggregate import AggregateMetrics

logger = structlog.get_logger()

DEFAULT_USER_WEIGHT = 0.6


@dataclass(frozen=True)
class ExternalAggregate:
    average_rating: int = 0
    popularity_score: int = 0
    member_count: int = 0
    trending_score: int = 0
    sources_count: int = 0

    @property
    def present(self) -> bool:
        return self.sources_count > 0


@dataclass(frozen=True)
class CombinedMetrics:
    user_average_rating: int
    user_total_contributors: int
    user_total_engagements: int
    user_growth_rate: int
    user_viral_score: int
    external_average_rating: int
    external_popularity_score: int
    external_member_count: int
    external_trending_score: int
    external_sources_count: int
    combined_rating: int
    combined_popularity: int
    combined_growth_rate: int
    last_updated: int

    def to_dict(self) -> dict:
        return asdict(self)


def _average_nonzero(values: Iterable[float]) -> int:
    present = [value for value in values if value > 0]
    if not present:
        return 0
    return math.floor(sum(present) / len(present))


def combine_external(records: list[ExternalMetricsRecord]) -> ExternalAggregate:
    """Fold per-source records into one reading.

    Ratings, popularity and trending average over the sources that reported a
    non-zero value; member counts add up across sources.
    """
    if not records:
        return ExternalAggregate()

    return ExternalAggregate(
        average_rating=_average_nonzero(r.metrics.rating for r in records),
        popularity_score=_average_nonzero(r.metrics.popularity for r in records),
        member_count=sum(r.metrics.member_count or 0 for r in records),
        trending_score=_average_nonzero(r.metrics.trending for r in records),
        sources_count=len(records),
    )


def blend(user: float, external: float, user_weight: float = DEFAULT_USER_WEIGHT) -> int:
    """Weighted blend where a zero on either side defers to the other side unchanged."""
    if user == 0 and external == 0:
        return 0
    if user == 0:
        return math.floor(external)
    if external == 0:
        return math.floor(user)
    return math.floor(user * user_weight + external * (1 - user_weight))


def combine_metrics(
    user: AggregateMetrics,
    external: ExternalAggregate,
    user_weight: float = DEFAULT_USER_WEIGHT,
) -> CombinedMetrics:
    # Engagements normalized to 0-10000 assuming 100k engagements saturates
    normalized_engagements = min(user.total_engagements / 100_000 * 10_000, 10_000)
    # Trending normalized onto the growth-rate scale
    normalized_trending = min(external.trending_score / 100 * 10_000, 10_000)

    combined = CombinedMetrics(
        user_average_rating=user.average_rating,
        user_total_contributors=user.total_contributors,
        user_total_engagements=user.total_engagements,
        user_growth_rate=user.growth_rate,
        user_viral_score=user.viral_content_score,
        external_average_rating=external.average_rating,
        external_popularity_score=external.popularity_score,
        external_member_count=external.member_count,
        external_trending_score=external.trending_score,
        external_sources_count=external.sources_count,
        combined_rating=blend(user.average_rating, external.average_rating, user_weight),
        combined_popularity=blend(normalized_engagements, external.popularity_score, user_weight),
        combined_growth_rate=blend(user.growth_rate, normalized_trending, user_weight),
        last_updated=now_ms(),
    )
    logger.debug("Combined metrics", sources=external.sources_count, combined_rating=combined.combined_rating)
    return combined
