"""Aggregate statistics over a set of verified contributions.

Every function here is pure: metrics are recomputed from scratch on each pass,
and an empty input yields zero-valued metrics rather than an error. Fixed-point
values are scaled by 100 (ratings, growth rate) to match the ledger's integer
representation.
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

from priceoracle.clock import MS_PER_DAY, MS_PER_WEEK, now_ms
from priceoracle.contributions.schemas import Contribution, EngagementType

VIRAL_SCORE_CAP = 10_000
GROWTH_WITHOUT_BASELINE = 10_000


@dataclass(frozen=True)
class AggregateMetrics:
    average_rating: int = 0
    total_contributors: int = 0
    total_engagements: int = 0
    counts_by_type: dict[str, int] = field(default_factory=dict)
    viral_content_score: int = 0
    prediction_accuracy: int = 0
    total_stake_volume: float = 0.0
    like_count: int = 0
    comment_count: int = 0
    growth_rate: int = 0
    engagement_velocity: int = 0
    new_contributors_this_week: int = 0
    last_updated: int = 0

    def count(self, engagement_type: EngagementType | str) -> int:
        key = engagement_type.value if isinstance(engagement_type, EngagementType) else engagement_type
        return self.counts_by_type.get(key, 0)

    def to_dict(self) -> dict:
        return {
            "average_rating": self.average_rating,
            "total_contributors": self.total_contributors,
            "total_engagements": self.total_engagements,
            **{f"{etype.value}_count": self.count(etype) for etype in EngagementType},
            "viral_content_score": self.viral_content_score,
            "prediction_accuracy": self.prediction_accuracy,
            "total_stake_volume": self.total_stake_volume,
            "growth_rate": self.growth_rate,
            "engagement_velocity": self.engagement_velocity,
            "new_contributors_this_week": self.new_contributors_this_week,
            "last_updated": self.last_updated,
        }


def aggregate(contributions: Iterable[Contribution], now: int | None = None) -> AggregateMetrics:
    items = list(contributions)
    current = now if now is not None else now_ms()

    return AggregateMetrics(
        average_rating=average_rating(items),
        total_contributors=count_unique_contributors(items),
        total_engagements=len(items),
        counts_by_type=count_by_type(items),
        viral_content_score=viral_score(items),
        total_stake_volume=sum(getattr(c, "stake_amount", 0) or 0 for c in items),
        like_count=sum(getattr(c, "likes", 0) or 0 for c in items),
        comment_count=sum(getattr(c, "comments", 0) or 0 for c in items),
        growth_rate=growth_rate(items, current),
        engagement_velocity=velocity(items),
        new_contributors_this_week=count_new_contributors(items, current),
        last_updated=current,
    )


def average_rating(contributions: list[Contribution]) -> int:
    ratings = [
        c.rating
        for c in contributions
        if c.engagement_type == EngagementType.RATING and getattr(c, "rating", None) is not None
    ]
    if not ratings:
        return 0
    return math.floor(sum(ratings) / len(ratings) * 100)


def count_unique_contributors(contributions: list[Contribution]) -> int:
    return len({c.author_address for c in contributions if c.author_address})


def count_by_type(contributions: list[Contribution]) -> dict[str, int]:
    return dict(Counter(c.engagement_type for c in contributions))


def _in_window(contribution: Contribution, start: int, end: int) -> bool:
    return contribution.timestamp is not None and start <= contribution.timestamp < end


def growth_rate(contributions: list[Contribution], now: int) -> int:
    """Week-over-week growth as a percentage scaled by 100 (25% -> 2500)."""
    one_week_ago = now - MS_PER_WEEK
    two_weeks_ago = now - 2 * MS_PER_WEEK

    this_week = sum(1 for c in contributions if _in_window(c, one_week_ago, now))
    last_week = sum(1 for c in contributions if _in_window(c, two_weeks_ago, one_week_ago))

    if last_week == 0:
        return GROWTH_WITHOUT_BASELINE if this_week > 0 else 0
    return math.floor((this_week - last_week) / last_week * 10_000)


def viral_score(contributions: list[Contribution]) -> int:
    total = sum(
        getattr(c, "engagement_count", 0) or 0
        for c in contributions
        if c.engagement_type in (EngagementType.MEME, EngagementType.POST)
    )
    return math.floor(min(total / 10, VIRAL_SCORE_CAP))


def velocity(contributions: list[Contribution]) -> int:
    """Contributions per day across the observed timestamp span."""
    if not contributions:
        return 0
    timestamps = sorted(c.timestamp for c in contributions if c.timestamp)
    if len(timestamps) < 2:
        return len(contributions)

    days = (timestamps[-1] - timestamps[0]) / MS_PER_DAY
    return math.floor(len(contributions) / days) if days > 0 else len(contributions)


def count_new_contributors(contributions: list[Contribution], now: int) -> int:
    one_week_ago = now - MS_PER_WEEK
    return len({c.author_address for c in contributions if c.author_address and _in_window(c, one_week_ago, now)})
