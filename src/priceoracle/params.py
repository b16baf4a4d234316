"""Pricing parameters loaded from YAML."""

from pathlib import Path

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field


class EngagementWeights(BaseModel):
    """Points contributed to the engagement score per unit of activity."""

    post: float = 1.0
    like: float = 0.1
    comment: float = 0.3
    rating: float = 0.5
    meme: float = 1.5
    prediction: float = 2.0
    stake: float = 3.0


class PricingParams(BaseModel):
    floor_price: int = Field(1_000_000, ge=1)
    engagement_multiplier: float = Field(0.001, ge=0)
    weights: EngagementWeights = Field(default_factory=EngagementWeights)

    # Anti-manipulation dampers
    external_boost_cap: float = Field(0.1, ge=0, le=1)
    drop_threshold: float = Field(0.5, gt=0, lt=1)
    stagnation_hours: float = Field(48.0, ge=0)
    stagnation_drop_rate: float = Field(0.01, ge=0)

    bar_period_seconds: int = Field(24 * 60 * 60, ge=1)
    history_limit: int = Field(1000, ge=1)
    user_weight: float = Field(0.6, ge=0, le=1)


def load_pricing_params(path: str = "pricing.yaml") -> PricingParams:
    p = Path(path)
    if not p.exists():
        return PricingParams()
    return PricingParams.model_validate(yaml.safe_load(p.read_text()) or {})


def save_pricing_params(params: PricingParams, path: str = "pricing.yaml") -> None:
    Path(path).write_text(yaml.safe_dump(params.model_dump(), sort_keys=False))
