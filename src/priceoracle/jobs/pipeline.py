"""Per-asset pipeline unit: load, verify, aggregate, blend, price."""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from priceoracle.attestation.client import AttestationClient, fetch_sources
from priceoracle.contributions.store import ContributionStore
from priceoracle.metrics.aggregate import AggregateMetrics, aggregate
from priceoracle.metrics.combine import CombinedMetrics, combine_external, combine_metrics
from priceoracle.pricing.engine import PriceEngine
from priceoracle.verify.signatures import SignatureVerifier

logger = structlog.get_logger()


@dataclass
class AssetResult:
    asset_id: str
    ok: bool = False
    price: int | None = None
    error: str | None = None
    loaded: int = 0
    rejected: int = 0
    omitted: int = 0
    external_sources: int = 0
    committed: bool = False
    commit_error: str | None = None
    metrics: AggregateMetrics | None = field(default=None, repr=False)
    combined: CombinedMetrics | None = field(default=None, repr=False)


@dataclass
class AssetPipeline:
    store: ContributionStore
    verifier: SignatureVerifier
    engine: PriceEngine
    attestation: AttestationClient | None = None
    sources: list[str] = field(default_factory=list)
    attestation_timeout_seconds: float = 30.0
    attestation_max_age_seconds: int = 3600

    async def run(self, asset_id: str) -> AssetResult:
        """Run one asset through the pipeline; failures pin the asset instead of raising."""
        result = AssetResult(asset_id=asset_id)
        try:
            loaded = await self.store.load(asset_id)
            result.loaded = len(loaded.contributions)
            result.omitted = len(loaded.omitted)

            verification = await self.verifier.verify_all(loaded.contributions)
            result.rejected = verification.rejected

            metrics = aggregate(verification.verified)
            records = await fetch_sources(
                self.attestation,
                asset_id,
                self.sources,
                timeout_seconds=self.attestation_timeout_seconds,
                max_age_seconds=self.attestation_max_age_seconds,
            )
            external = combine_external(records)
            result.external_sources = external.sources_count

            state = self.engine.record(asset_id, metrics, external)
            result.metrics = metrics
            result.combined = combine_metrics(metrics, external, self.engine.params.user_weight)
            result.price = state.price
            result.ok = True
        except Exception as e:
            logger.exception("Asset pipeline failed", asset_id=asset_id)
            state = self.engine.mark_failed(asset_id, str(e) or type(e).__name__)
            result.price = state.price
            result.error = state.error
        return result
