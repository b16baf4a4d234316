"""Synthetic price derivation and OHLC tracking.

Each asset moves from untracked to tracked on first observation, when its bar
is seeded at the floor price. Prices grow with weighted engagement and a
capped external boost, and are damped two ways: a drawdown clamp relative to
the current bar's high, then a linear decay once engagement has not moved the
price for longer than the stagnation window. The decay is measured against
the price at the last movement, so successive ticks do not compound it.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass, replace

import structlog

from priceoracle.clock import MS_PER_HOUR, now_ms
from priceoracle.contributions.schemas import PREDICTION_TYPES, EngagementType
from priceoracle.errors import PriceDerivationError
from priceoracle.metrics.aggregate import AggregateMetrics
from priceoracle.metrics.combine import ExternalAggregate
from priceoracle.params import PricingParams
from priceoracle.pricing.history import InMemoryPriceHistory, OHLCPoint, PriceHistoryStore

logger = structlog.get_logger()


@dataclass
class PriceState:
    asset_id: str
    price: int
    bar: OHLCPoint
    updated_at: int
    last_changed_at: int
    stagnation_decay: float = 0.0
    error: str | None = None
    metrics: AggregateMetrics | None = None
    external: ExternalAggregate | None = None

    def to_update(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "price": self.price,
            "timestamp": self.updated_at,
            "ohlc": self.bar.to_dict(),
            "error": self.error,
        }


@dataclass(frozen=True)
class _Derivation:
    price: int
    moved: bool
    decay: float


class PriceEngine:
    def __init__(
        self,
        params: PricingParams,
        *,
        history: PriceHistoryStore | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.params = params
        self._history = history or InMemoryPriceHistory(params.history_limit)
        self._clock = clock
        self._states: dict[str, PriceState] = {}

    def _ensure_state(self, asset_id: str) -> PriceState:
        state = self._states.get(asset_id)
        if state is None:
            now = self._clock()
            floor = self.params.floor_price
            state = PriceState(
                asset_id=asset_id,
                price=floor,
                bar=OHLCPoint(timestamp=now, open=floor, high=floor, low=floor, close=floor),
                updated_at=now,
                last_changed_at=now,
            )
            self._states[asset_id] = state
            logger.info("Tracking new asset", asset_id=asset_id, floor_price=floor)
        return state

    def engagement_score(self, metrics: AggregateMetrics) -> float:
        """Weighted engagement; commitment-heavy actions count for more than passive likes."""
        weights = self.params.weights
        predictions = sum(metrics.count(etype) for etype in PREDICTION_TYPES)
        return (
            metrics.count(EngagementType.POST) * weights.post
            + metrics.count(EngagementType.RATING) * weights.rating
            + metrics.count(EngagementType.MEME) * weights.meme
            + predictions * weights.prediction
            + metrics.count(EngagementType.STAKE) * weights.stake
            + metrics.like_count * weights.like
            + metrics.comment_count * weights.comment
        )

    def derive_price(
        self,
        asset_id: str,
        prior_price: int | None,
        metrics: AggregateMetrics,
        external: ExternalAggregate | None = None,
    ) -> int:
        return self._derive(asset_id, prior_price, metrics, external).price

    def _derive(
        self,
        asset_id: str,
        prior_price: int | None,
        metrics: AggregateMetrics,
        external: ExternalAggregate | None,
    ) -> _Derivation:
        params = self.params
        state = self._ensure_state(asset_id)

        base = prior_price if prior_price else params.floor_price
        engagement_delta = self.engagement_score(metrics) * params.engagement_multiplier
        price = base * (1 + engagement_delta / 100)

        if external is not None and external.present:
            boost = min(external.popularity_score / 10_000, 1) * params.external_boost_cap
            price *= 1 + boost

        undamped = price
        moved = math.floor(undamped) != math.floor(base)

        prior_high = state.bar.high
        clamp_level = prior_high * (1 - params.drop_threshold)
        if prior_high > 0 and price < clamp_level:
            logger.warning(
                "Price drop exceeds threshold, clamping",
                asset_id=asset_id,
                drop_pct=round((1 - price / prior_high) * 100, 2),
            )
            price = clamp_level

        decay = 0.0
        hours_unchanged = (self._clock() - state.last_changed_at) / MS_PER_HOUR
        if not moved and hours_unchanged > params.stagnation_hours:
            decay = min((hours_unchanged - params.stagnation_hours) * params.stagnation_drop_rate, 1.0)
            # Earlier ticks in this window already applied part of the decay
            already = state.stagnation_decay
            price *= 0.0 if decay >= 1.0 else (1 - decay) / (1 - already)
            logger.warning(
                "Price stagnant, applying decay",
                asset_id=asset_id,
                hours_unchanged=round(hours_unchanged, 2),
                decay_pct=round(decay * 100, 2),
            )

        if not math.isfinite(price):
            raise PriceDerivationError(f"Derived a non-finite price for {asset_id}")
        return _Derivation(price=math.floor(max(price, params.floor_price)), moved=moved, decay=decay)

    def update_ohlc(self, asset_id: str, new_price: int, volume: float = 0.0) -> OHLCPoint:
        """Fold a price into the current bar, rolling the bar over once it is a full period old."""
        state = self._ensure_state(asset_id)
        now = self._clock()
        bar = state.bar

        if now - bar.timestamp >= self.params.bar_period_seconds * 1000:
            self._history.append(asset_id, bar)
            bar = OHLCPoint(timestamp=now, open=new_price, high=new_price, low=new_price, close=new_price, volume=volume)
        else:
            bar = replace(
                bar,
                close=new_price,
                high=max(bar.high, new_price),
                low=min(bar.low, new_price),
                volume=volume,
            )

        state.bar = bar
        return bar

    def record(
        self,
        asset_id: str,
        metrics: AggregateMetrics,
        external: ExternalAggregate | None = None,
    ) -> PriceState:
        """Derive the next price from the tracked state and commit it to the bar."""
        state = self._ensure_state(asset_id)
        derivation = self._derive(asset_id, state.price, metrics, external)
        new_price = derivation.price
        self.update_ohlc(asset_id, new_price, volume=self.engagement_score(metrics))

        now = self._clock()
        if derivation.moved:
            state.last_changed_at = now
            state.stagnation_decay = 0.0
        else:
            state.stagnation_decay = derivation.decay
        state.price = new_price
        state.updated_at = now
        state.metrics = metrics
        state.external = external
        state.error = None
        logger.info("Price updated", asset_id=asset_id, price=new_price)
        return replace(state)

    def mark_failed(self, asset_id: str, error: str) -> PriceState:
        """Pin an asset to the floor price and flag the failure."""
        state = self._ensure_state(asset_id)
        now = self._clock()
        floor = self.params.floor_price

        if state.error is None and state.bar.timestamp < now:
            self._history.append(asset_id, state.bar)
        if state.price != floor:
            state.last_changed_at = now
            state.stagnation_decay = 0.0
        state.price = floor
        state.bar = OHLCPoint(timestamp=now, open=floor, high=floor, low=floor, close=floor)
        state.updated_at = now
        state.error = error
        logger.error("Price derivation failed, pinned to floor", asset_id=asset_id, error=error)
        return replace(state)

    def get_current_price(self, asset_id: str) -> PriceState | None:
        state = self._states.get(asset_id)
        return replace(state) if state else None

    def get_history(self, asset_id: str, limit: int = 100) -> list[OHLCPoint]:
        return self._history.recent(asset_id, limit)

    def get_ohlc(self, asset_id: str) -> OHLCPoint | None:
        state = self._states.get(asset_id)
        return state.bar if state else None

    def asset_ids(self) -> list[str]:
        return list(self._states)

    def snapshot(self, asset_ids: list[str] | None = None) -> list[dict]:
        ids = self.asset_ids() if asset_ids is None else asset_ids
        return [self._states[asset_id].to_update() for asset_id in ids if asset_id in self._states]
