"""Unit tests for contribution aggregation."""

import random

from conftest import DAY_MS, NOW_MS, make_payload
from priceoracle.contributions.schemas import decode_contribution
from priceoracle.metrics.aggregate import (
    GROWTH_WITHOUT_BASELINE,
    VIRAL_SCORE_CAP,
    aggregate,
    average_rating,
    count_unique_contributors,
    growth_rate,
    velocity,
    viral_score,
)


def contribution(engagement_type, **fields):
    return decode_contribution(make_payload(engagement_type, **fields))


class TestAverageRating:
    """Tests for average_rating()."""

    def test_scaled_by_100(self):
        """Should average ratings and scale by 100."""
        items = [contribution("rating", rating=r) for r in [6, 7, 8, 9, 10, 6, 7, 8, 9, 10]]
        assert average_rating(items) == 800

    def test_ignores_other_types(self):
        """Should only average rating contributions."""
        items = [contribution("rating", rating=5), contribution("post")]
        assert average_rating(items) == 500

    def test_floors_fraction(self):
        items = [contribution("rating", rating=r) for r in [7, 7, 8]]
        assert average_rating(items) == 733

    def test_stays_within_bounds(self):
        """Should stay within 0-1000 for any valid ratings."""
        rng = random.Random(7)
        for _ in range(50):
            items = [contribution("rating", rating=rng.uniform(0, 10)) for _ in range(rng.randint(1, 8))]
            assert 0 <= average_rating(items) <= 1000


class TestGrowthRate:
    """Tests for growth_rate()."""

    def test_no_baseline_with_activity(self):
        """Should report the sentinel when last week was empty."""
        items = [contribution("meme", timestamp=NOW_MS - DAY_MS)]
        assert growth_rate(items, NOW_MS) == GROWTH_WITHOUT_BASELINE

    def test_no_activity(self):
        assert growth_rate([], NOW_MS) == 0

    def test_week_over_week(self):
        """Should compute percentage change scaled by 100."""
        items = [contribution("meme", timestamp=NOW_MS - DAY_MS)] * 5
        items += [contribution("meme", timestamp=NOW_MS - 8 * DAY_MS)] * 4
        assert growth_rate(items, NOW_MS) == 2500

    def test_decline(self):
        items = [contribution("meme", timestamp=NOW_MS - DAY_MS)]
        items += [contribution("meme", timestamp=NOW_MS - 8 * DAY_MS)] * 2
        assert growth_rate(items, NOW_MS) == -5000

    def test_ignores_older_activity(self):
        """Should ignore contributions older than two weeks."""
        items = [contribution("meme", timestamp=NOW_MS - 20 * DAY_MS)]
        assert growth_rate(items, NOW_MS) == 0


class TestViralScore:
    """Tests for viral_score()."""

    def test_sums_memes_and_posts(self):
        items = [contribution("meme", engagement_count=150), contribution("post", engagement_count=50)]
        assert viral_score(items) == 20

    def test_ignores_other_types(self):
        items = [contribution("stake", stake_amount=5, engagement_count=1000)]
        assert viral_score(items) == 0

    def test_capped(self):
        items = [contribution("meme", engagement_count=500_000)]
        assert viral_score(items) == VIRAL_SCORE_CAP


class TestVelocity:
    """Tests for velocity()."""

    def test_per_day(self):
        """Should divide the count by the observed span in days."""
        items = [contribution("meme", timestamp=NOW_MS - i * DAY_MS // 2) for i in range(5)]
        assert velocity(items) == 2

    def test_single_timestamp(self):
        """Should fall back to the raw count without a span."""
        items = [contribution("meme", timestamp=NOW_MS)] * 3
        assert velocity(items) == 3

    def test_empty(self):
        assert velocity([]) == 0


def test_unique_contributors():
    """Should count distinct authors."""
    items = [
        contribution("meme", user_wallet="0xa"),
        contribution("post", user_wallet="0xa"),
        contribution("post", user_wallet="0xb"),
    ]
    assert count_unique_contributors(items) == 2


class TestAggregate:
    """Tests for aggregate()."""

    def test_empty_is_zeroed(self):
        """Should produce zero metrics for no contributions."""
        metrics = aggregate([], now=NOW_MS)
        assert metrics.total_engagements == 0
        assert metrics.average_rating == 0
        assert metrics.growth_rate == 0
        assert metrics.counts_by_type == {}
        assert metrics.last_updated == NOW_MS

    def test_full_pass(self):
        """Should fill every metric from one set of contributions."""
        items = [
            contribution("rating", rating=8, user_wallet="0xa", timestamp=NOW_MS - DAY_MS),
            contribution("post", likes=4, comments=2, engagement_count=30, user_wallet="0xb", timestamp=NOW_MS - DAY_MS),
            contribution("stake", stake_amount=12.5, user_wallet="0xa", timestamp=NOW_MS - 2 * DAY_MS),
            contribution("price_prediction", predicted_price=10, user_wallet="0xc", timestamp=NOW_MS - 9 * DAY_MS),
        ]

        metrics = aggregate(items, now=NOW_MS)

        assert metrics.average_rating == 800
        assert metrics.total_contributors == 3
        assert metrics.total_engagements == 4
        assert metrics.count("post") == 1
        assert metrics.count("price_prediction") == 1
        assert metrics.total_stake_volume == 12.5
        assert metrics.like_count == 4
        assert metrics.comment_count == 2
        assert metrics.viral_content_score == 3
        assert metrics.growth_rate == 20000
        assert metrics.new_contributors_this_week == 2

    def test_to_dict_lists_every_type(self):
        metrics = aggregate([contribution("meme")], now=NOW_MS)
        payload = metrics.to_dict()
        assert payload["meme_count"] == 1
        assert payload["stake_count"] == 0
