"""Contribution records decoded from the blob store.

Each engagement type carries its own payload fields, so contributions are a
discriminated union keyed by ``engagement_type``. Blobs are decoded once, at
ingestion, and the raw mapping is retained because signatures cover the exact
fields the author submitted.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, TypeAdapter, ValidationError

from priceoracle.errors import ContributionDecodeError

# Fields assigned by storage after the author signed the payload
CONTENT_REF_FIELDS = ("content_ref", "walrus_cid")


class EngagementType(str, Enum):
    RATING = "rating"
    MEME = "meme"
    POST = "post"
    EPISODE_PREDICTION = "episode_prediction"
    PRICE_PREDICTION = "price_prediction"
    STAKE = "stake"


PREDICTION_TYPES = frozenset({EngagementType.EPISODE_PREDICTION, EngagementType.PRICE_PREDICTION})


class ContributionBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    asset_id: str = Field(validation_alias=AliasChoices("ip_token_id", "asset_id"))
    author_address: str | None = Field(None, validation_alias=AliasChoices("user_wallet", "author_address"))
    timestamp: int | None = None
    signature: str | None = None
    content_ref: str | None = Field(None, validation_alias=AliasChoices(*CONTENT_REF_FIELDS))

    _raw: dict[str, Any] = PrivateAttr(default_factory=dict)

    @property
    def raw(self) -> dict[str, Any]:
        """The payload exactly as decoded from the blob."""
        return dict(self._raw)


class RatingContribution(ContributionBase):
    engagement_type: Literal["rating"]
    rating: float | None = Field(None, ge=0, le=10)


class MemeContribution(ContributionBase):
    engagement_type: Literal["meme"]
    engagement_count: int = Field(0, ge=0)
    media_url: str | None = None


class PostContribution(ContributionBase):
    engagement_type: Literal["post"]
    engagement_count: int = Field(0, ge=0)
    likes: int = Field(0, ge=0)
    comments: int = Field(0, ge=0)
    content: str | None = None


class EpisodePredictionContribution(ContributionBase):
    engagement_type: Literal["episode_prediction"]
    prediction: str | None = None
    episode: int | None = None


class PricePredictionContribution(ContributionBase):
    engagement_type: Literal["price_prediction"]
    predicted_price: float | None = Field(None, ge=0)
    target_timestamp: int | None = None


class StakeContribution(ContributionBase):
    engagement_type: Literal["stake"]
    stake_amount: float = Field(0, ge=0)


Contribution = Annotated[
    Union[
        RatingContribution,
        MemeContribution,
        PostContribution,
        EpisodePredictionContribution,
        PricePredictionContribution,
        StakeContribution,
    ],
    Field(discriminator="engagement_type"),
]

_contribution_adapter: TypeAdapter[Contribution] = TypeAdapter(Contribution)


def decode_contribution(data: bytes | str | dict[str, Any], content_ref: str | None = None) -> Contribution:
    """Decode a blob payload into its typed contribution variant."""
    if isinstance(data, dict):
        raw = data
    else:
        try:
            raw = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ContributionDecodeError(f"Contribution is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ContributionDecodeError("Contribution payload must be a JSON object")

    try:
        contribution = _contribution_adapter.validate_python(raw)
    except ValidationError as e:
        raise ContributionDecodeError(f"Invalid contribution: {e.error_count()} error(s)") from e

    contribution._raw = dict(raw)
    if content_ref and not contribution.content_ref:
        contribution.content_ref = content_ref
    return contribution


def contribution_metadata(contribution: ContributionBase) -> dict[str, Any]:
    """Metadata cached alongside an index entry to avoid re-reading the blob."""
    return {
        "engagement_type": getattr(contribution, "engagement_type", None),
        "timestamp": contribution.timestamp,
        "user_wallet": contribution.author_address,
    }
