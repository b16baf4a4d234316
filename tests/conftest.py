"""Pytest fixtures for Price Oracle tests."""

import asyncio
import hashlib
import json
from typing import Any

import pytest

from priceoracle.attestation.client import ExternalMetrics, ExternalMetricsRecord
from priceoracle.contributions.repository import InMemoryContributionRepository
from priceoracle.contributions.store import ContributionStore
from priceoracle.errors import BlobNotFoundError, BlobReadError
from priceoracle.ledger.client import CommitOutcome
from priceoracle.params import PricingParams
from priceoracle.pricing.engine import PriceEngine
from priceoracle.storage.blobs import BlobStore

NOW_MS = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000


class FakeClock:
    def __init__(self, now: int = NOW_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeLedger:
    """In-process ledger: every signature is valid unless listed in ``invalid``."""

    def __init__(self, assets: list[str] | None = None) -> None:
        self.assets = list(assets or [])
        self.invalid: set[str] = set()
        self.failing_commits: set[str] = set()
        self.commits: dict[str, dict[str, Any]] = {}
        self.verified_payloads: list[bytes] = []
        self.asset_calls = 0
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.assets_error: Exception | None = None

    async def get_tracked_assets(self) -> list[str]:
        self.asset_calls += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.assets_error is not None:
            raise self.assets_error
        return list(self.assets)

    async def verify_signature(self, payload: bytes, signature: str, author_address: str) -> bool:
        self.verified_payloads.append(payload)
        return signature not in self.invalid

    async def commit_metrics(self, asset_id: str, metrics: dict[str, Any]) -> CommitOutcome:
        if asset_id in self.failing_commits:
            return CommitOutcome(ok=False, error="gas budget exceeded")
        self.commits[asset_id] = metrics
        return CommitOutcome(ok=True, digest=f"digest-{asset_id}")


class MemoryBlobTransport:
    """Blob transport over a dict, with switches for missing and failing reads."""

    def __init__(self, name: str = "memory") -> None:
        self._name = name
        self.blobs: dict[str, bytes] = {}
        self.failing: set[str] = set()
        self.reads: list[str] = []
        self.delay: float = 0.0

    @property
    def name(self) -> str:
        return self._name

    def put(self, payload: dict[str, Any]) -> str:
        data = json.dumps(payload).encode("utf-8")
        ref = hashlib.sha256(data).hexdigest()
        self.blobs[ref] = data
        return ref

    async def get(self, content_ref: str) -> bytes:
        self.reads.append(content_ref)
        if self.delay:
            await asyncio.sleep(self.delay)
        if content_ref in self.failing:
            raise BlobReadError(f"{content_ref} unavailable")
        if content_ref not in self.blobs:
            raise BlobNotFoundError(f"{content_ref} not found")
        return self.blobs[content_ref]


class FakeAttestation:
    def __init__(self) -> None:
        self.responses: dict[str, ExternalMetricsRecord | Exception] = {}

    async def fetch(self, asset_id: str, source: str) -> ExternalMetricsRecord:
        response = self.responses.get(source)
        if response is None:
            raise RuntimeError(f"no data from {source}")
        if isinstance(response, Exception):
            raise response
        return response.model_copy(update={"asset_id": asset_id})


def make_payload(engagement_type: str, asset_id: str = "asset-1", **fields: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "ip_token_id": asset_id,
        "user_wallet": fields.pop("user_wallet", "0xalice"),
        "engagement_type": engagement_type,
        "timestamp": fields.pop("timestamp", NOW_MS - HOUR_MS),
        "signature": fields.pop("signature", "deadbeef"),
    }
    payload.update(fields)
    return payload


def make_record(source: str, timestamp: int = NOW_MS, signature: str | None = "abcdef", **metrics: Any) -> ExternalMetricsRecord:
    return ExternalMetricsRecord(
        asset_id="asset-1",
        source=source,
        metrics=ExternalMetrics(**metrics),
        signature=signature,
        timestamp=timestamp,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger(assets=["asset-1"])


@pytest.fixture
def blob_transport() -> MemoryBlobTransport:
    return MemoryBlobTransport()


@pytest.fixture
def blob_store(blob_transport: MemoryBlobTransport) -> BlobStore:
    return BlobStore([blob_transport], timeout_seconds=1.0, attempts=1)


@pytest.fixture
def repository() -> InMemoryContributionRepository:
    return InMemoryContributionRepository()


@pytest.fixture
def store(repository: InMemoryContributionRepository, blob_store: BlobStore) -> ContributionStore:
    return ContributionStore(repository, blob_store)


@pytest.fixture
def params() -> PricingParams:
    return PricingParams(floor_price=1000)


@pytest.fixture
def engine(params: PricingParams, clock: FakeClock) -> PriceEngine:
    return PriceEngine(params, clock=clock)
