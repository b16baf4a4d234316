"""Tests for the pricing pipeline and tick scheduling."""

import asyncio
import json

import pytest

from conftest import FakeAttestation, make_payload, make_record
from priceoracle.clock import now_ms
from priceoracle.errors import LedgerError
from priceoracle.feed.broadcaster import Broadcaster, QueueSubscriber
from priceoracle.jobs.pipeline import AssetPipeline
from priceoracle.jobs.scheduler import Scheduler
from priceoracle.params import PricingParams
from priceoracle.verify.signatures import SignatureVerifier


@pytest.fixture
def params():
    return PricingParams(floor_price=1000, engagement_multiplier=1.0)


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def pipeline(store, ledger, engine):
    return AssetPipeline(store=store, verifier=SignatureVerifier(ledger), engine=engine)


@pytest.fixture
def scheduler(ledger, pipeline, broadcaster, clock):
    return Scheduler(ledger, pipeline, broadcaster, clock=clock)


async def next_update(subscriber: QueueSubscriber) -> list[dict]:
    message = await asyncio.wait_for(subscriber.receive(), timeout=1)
    return json.loads(message)["data"]


@pytest.mark.asyncio
class TestTick:
    """Tests for a single scheduler tick."""

    async def test_new_asset_priced_at_floor(self, scheduler, broadcaster, engine):
        """Should price an asset with no contributions at the floor and broadcast it."""
        subscriber = QueueSubscriber()
        broadcaster.subscribe(subscriber)

        report = await scheduler.tick()

        assert report.succeeded == 1
        assert report.results[0].price == 1000
        bar = engine.get_ohlc("asset-1")
        assert (bar.open, bar.high, bar.low, bar.close) == (1000, 1000, 1000, 1000)
        updates = await next_update(subscriber)
        assert updates[0]["asset_id"] == "asset-1"
        assert updates[0]["price"] == 1000

    async def test_verified_engagement_moves_price(self, scheduler, store, blob_transport, ledger):
        """Should count only contributions with valid signatures."""
        ledger.invalid.add("bad0")
        for payload in [
            make_payload("post", signature="aa01", user_wallet="0x1"),
            make_payload("post", signature="aa02", user_wallet="0x2"),
            make_payload("post", signature="bad0", user_wallet="0x3"),
        ]:
            await store.index("asset-1", blob_transport.put(payload))

        report = await scheduler.tick()

        result = report.results[0]
        assert result.loaded == 3
        assert result.rejected == 1
        assert result.price == 1020

    async def test_external_metrics_boost_price(self, store, ledger, engine, broadcaster, clock):
        """Should apply attested external popularity to the price."""
        attestation = FakeAttestation()
        attestation.responses["anilist"] = make_record("anilist", timestamp=now_ms(), popularity=10_000)
        pipeline = AssetPipeline(
            store=store,
            verifier=SignatureVerifier(ledger),
            engine=engine,
            attestation=attestation,
            sources=["anilist", "myanimelist"],
        )

        report = await Scheduler(ledger, pipeline, broadcaster, clock=clock).tick()

        assert report.results[0].external_sources == 1
        assert report.results[0].price == 1100

    async def test_overlapping_tick_is_skipped(self, scheduler, ledger):
        """Should skip a tick requested while another is still running."""
        ledger.gate = asyncio.Event()
        first = asyncio.create_task(scheduler.tick())
        await ledger.entered.wait()

        assert scheduler.in_flight
        assert await scheduler.tick() is None

        ledger.gate.set()
        report = await first
        assert report.succeeded == 1
        assert ledger.asset_calls == 1
        assert not scheduler.in_flight

    async def test_asset_failure_is_isolated(self, scheduler, store, ledger, engine, monkeypatch):
        """Should pin a failing asset to the floor without affecting the others."""
        ledger.assets = ["good", "bad"]
        original_load = store.load

        async def load(asset_id, query_filter=None):
            if asset_id == "bad":
                raise RuntimeError("index unavailable")
            return await original_load(asset_id, query_filter)

        monkeypatch.setattr(store, "load", load)

        report = await scheduler.tick()

        assert report.succeeded == 1
        assert report.failed == 1
        bad = engine.get_current_price("bad")
        assert bad.price == 1000
        assert bad.error == "index unavailable"
        assert engine.get_current_price("good").error is None

    async def test_escaped_exception_marks_asset_failed(self, scheduler, pipeline, ledger, engine, monkeypatch):
        """Should still price other assets when a pipeline run raises."""
        ledger.assets = ["good", "bad"]
        original_run = pipeline.run

        async def run(asset_id):
            if asset_id == "bad":
                raise ValueError("unexpected")
            return await original_run(asset_id)

        monkeypatch.setattr(pipeline, "run", run)

        report = await scheduler.tick()

        assert report.succeeded == 1
        assert engine.get_current_price("bad").error is not None
        assert report.published.delivered == 0

    async def test_failed_assets_are_broadcast_with_error(self, scheduler, store, ledger, broadcaster, monkeypatch):
        ledger.assets = ["good", "bad"]
        original_load = store.load

        async def load(asset_id, query_filter=None):
            if asset_id == "bad":
                raise RuntimeError("index unavailable")
            return await original_load(asset_id, query_filter)

        monkeypatch.setattr(store, "load", load)
        subscriber = QueueSubscriber()
        broadcaster.subscribe(subscriber)

        await scheduler.tick()

        updates = {u["asset_id"]: u for u in await next_update(subscriber)}
        assert updates["bad"]["error"] == "index unavailable"
        assert updates["good"]["error"] is None

    async def test_ledger_outage_skips_tick(self, scheduler, ledger, broadcaster):
        """Should record the error and publish nothing when assets cannot be listed."""
        ledger.assets_error = LedgerError("gateway unreachable")
        subscriber = QueueSubscriber()
        broadcaster.subscribe(subscriber)

        report = await scheduler.tick()

        assert report.error == "gateway unreachable"
        assert report.published is None
        assert not scheduler.in_flight

    async def test_no_assets(self, scheduler, ledger):
        ledger.assets = []
        report = await scheduler.tick()
        assert report.assets == 0
        assert report.published is None

    async def test_commit_failures_are_recorded(self, ledger, pipeline, broadcaster, clock):
        """Should keep going when one asset's metrics fail to commit."""
        ledger.assets = ["asset-1", "asset-2"]
        ledger.failing_commits.add("asset-2")
        scheduler = Scheduler(ledger, pipeline, broadcaster, commit_metrics=True, clock=clock)

        report = await scheduler.tick()

        assert report.commit_failures == 1
        committed = {r.asset_id: r for r in report.results}
        assert committed["asset-1"].committed
        assert committed["asset-2"].commit_error == "gas budget exceeded"
        assert "average_rating" in ledger.commits["asset-1"]
        assert "combined_rating" in ledger.commits["asset-1"]


@pytest.mark.asyncio
class TestPeriodicScheduling:
    """Tests for Scheduler.start() and stop()."""

    async def test_runs_until_stopped(self, scheduler, ledger):
        """Should tick repeatedly and stop triggering after stop()."""
        scheduler.start(0.01)
        await asyncio.sleep(0.1)
        scheduler.stop()
        await scheduler.join()

        calls = ledger.asset_calls
        assert calls >= 2
        assert not scheduler.running

        await asyncio.sleep(0.05)
        assert ledger.asset_calls == calls

    async def test_slow_tick_suppresses_overlap(self, scheduler, ledger):
        """Should not start another tick while one is stuck in flight."""
        ledger.gate = asyncio.Event()
        scheduler.start(0.01)
        await ledger.entered.wait()
        await asyncio.sleep(0.05)

        assert ledger.asset_calls == 1

        scheduler.stop()
        ledger.gate.set()
        await scheduler.join()

    async def test_stop_lets_in_flight_tick_finish(self, scheduler, ledger, engine):
        """Should complete a tick that was already running when stopped."""
        ledger.gate = asyncio.Event()
        scheduler.start(60)
        await ledger.entered.wait()

        scheduler.stop()
        ledger.gate.set()
        await scheduler.join()

        assert engine.get_current_price("asset-1").price == 1000
