"""Assemble the pipeline components from settings."""

from __future__ import annotations

from dataclasses import dataclass

from priceoracle.attestation.client import HttpAttestationClient
from priceoracle.config import Settings
from priceoracle.contributions.repository import (
    ContributionRepository,
    InMemoryContributionRepository,
    SqlContributionRepository,
)
from priceoracle.contributions.store import ContributionStore
from priceoracle.db import init_db
from priceoracle.feed.broadcaster import Broadcaster
from priceoracle.jobs.pipeline import AssetPipeline
from priceoracle.jobs.scheduler import Scheduler
from priceoracle.ledger.client import HttpLedgerClient, LedgerClient
from priceoracle.params import PricingParams
from priceoracle.pricing.engine import PriceEngine
from priceoracle.storage.blobs import build_blob_store
from priceoracle.verify.signatures import SignatureVerifier


@dataclass
class PriceOracle:
    store: ContributionStore
    engine: PriceEngine
    broadcaster: Broadcaster
    scheduler: Scheduler


def build_repository(config: Settings) -> ContributionRepository:
    if config.contribution_repository == "sql":
        return SqlContributionRepository(init_db(config.database_url))
    return InMemoryContributionRepository()


def build_price_oracle(
    config: Settings,
    params: PricingParams,
    *,
    ledger: LedgerClient | None = None,
) -> PriceOracle:
    ledger = ledger or HttpLedgerClient(config.ledger_url, timeout_seconds=config.ledger_timeout_seconds)
    store = ContributionStore(build_repository(config), build_blob_store(config))
    engine = PriceEngine(params)
    broadcaster = Broadcaster()

    attestation = None
    if config.attestation_enabled and config.attestation_url:
        attestation = HttpAttestationClient(config.attestation_url, timeout_seconds=config.attestation_timeout_seconds)

    pipeline = AssetPipeline(
        store=store,
        verifier=SignatureVerifier(ledger, timeout_seconds=config.ledger_timeout_seconds),
        engine=engine,
        attestation=attestation,
        sources=list(config.attestation_sources),
        attestation_timeout_seconds=config.attestation_timeout_seconds,
        attestation_max_age_seconds=config.attestation_max_age_seconds,
    )
    scheduler = Scheduler(
        ledger,
        pipeline,
        broadcaster,
        commit_metrics=config.commit_metrics,
        ledger_timeout_seconds=config.ledger_timeout_seconds,
    )
    return PriceOracle(store=store, engine=engine, broadcaster=broadcaster, scheduler=scheduler)
