"""Periodic, non-reentrant orchestration of the pricing pipeline."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from priceoracle.clock import now_ms
from priceoracle.feed.broadcaster import Broadcaster, PublishResult
from priceoracle.jobs.pipeline import AssetPipeline, AssetResult
from priceoracle.ledger.client import LedgerClient

logger = structlog.get_logger()


@dataclass
class TickReport:
    started_at: int
    finished_at: int = 0
    assets: int = 0
    succeeded: int = 0
    failed: int = 0
    commit_failures: int = 0
    published: PublishResult | None = None
    results: list[AssetResult] = field(default_factory=list)
    error: str | None = None


class Scheduler:
    """Runs one pipeline pass per tick across every tracked asset.

    Only one tick may be in flight; a tick requested while another is running
    is skipped. Assets are processed concurrently and a failure in one never
    cancels the others.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        pipeline: AssetPipeline,
        broadcaster: Broadcaster,
        *,
        commit_metrics: bool = False,
        ledger_timeout_seconds: float = 10.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._ledger = ledger
        self._pipeline = pipeline
        self._broadcaster = broadcaster
        self._commit_metrics = commit_metrics
        self._ledger_timeout_seconds = ledger_timeout_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._timer: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def tick(self) -> TickReport | None:
        # No await between the check and the acquire, so the guard is atomic on the loop
        if self._lock.locked():
            logger.warning("Previous tick still running, skipping")
            return None
        async with self._lock:
            return await self._run_tick()

    async def _run_tick(self) -> TickReport:
        report = TickReport(started_at=self._clock())

        try:
            assets = await asyncio.wait_for(self._ledger.get_tracked_assets(), timeout=self._ledger_timeout_seconds)
        except Exception as e:
            logger.error("Failed to fetch tracked assets", error=repr(e))
            report.error = str(e) or type(e).__name__
            report.finished_at = self._clock()
            return report

        report.assets = len(assets)
        if not assets:
            logger.warning("No tracked assets to update")
            report.finished_at = self._clock()
            return report

        logger.info("Starting tick", assets=len(assets))
        outcomes = await asyncio.gather(*(self._pipeline.run(asset_id) for asset_id in assets), return_exceptions=True)

        for asset_id, outcome in zip(assets, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Asset unit escaped its boundary", asset_id=asset_id, error=repr(outcome))
                state = self._pipeline.engine.mark_failed(asset_id, repr(outcome))
                outcome = AssetResult(asset_id=asset_id, price=state.price, error=state.error)
            report.results.append(outcome)

        report.succeeded = sum(1 for r in report.results if r.ok)
        report.failed = len(report.results) - report.succeeded
        report.published = self._broadcaster.publish(self._pipeline.engine.snapshot(assets))

        if self._commit_metrics:
            await self._commit(report.results)
            report.commit_failures = sum(1 for r in report.results if r.ok and not r.committed)

        report.finished_at = self._clock()
        logger.info(
            "Tick complete",
            succeeded=report.succeeded,
            failed=report.failed,
            commit_failures=report.commit_failures,
            duration_ms=report.finished_at - report.started_at,
        )
        return report

    async def _commit(self, results: list[AssetResult]) -> None:
        pending = [r for r in results if r.ok and r.metrics is not None]
        outcomes = await asyncio.gather(
            *(
                asyncio.wait_for(
                    self._ledger.commit_metrics(
                        r.asset_id,
                        {**r.metrics.to_dict(), **(r.combined.to_dict() if r.combined else {})},
                    ),
                    timeout=self._ledger_timeout_seconds,
                )
                for r in pending
            ),
            return_exceptions=True,
        )
        for result, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                result.commit_error = str(outcome) or type(outcome).__name__
            elif not outcome.ok:
                result.commit_error = outcome.error or "commit_failed"
            else:
                result.committed = True
                continue
            logger.error("Failed to commit metrics", asset_id=result.asset_id, error=result.commit_error)

    def start(self, interval_seconds: float) -> None:
        """Trigger a tick every ``interval_seconds`` on the running loop."""
        if self.running:
            return
        self._timer = asyncio.get_running_loop().create_task(self._trigger_periodically(interval_seconds))
        logger.info("Scheduler started", interval_seconds=interval_seconds)

    def stop(self) -> None:
        """Stop future ticks; a tick already in flight runs to completion."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            logger.info("Scheduler stopped")

    async def join(self) -> None:
        if self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)

    async def _trigger_periodically(self, interval_seconds: float) -> None:
        while True:
            task = asyncio.create_task(self._guarded_tick())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            await asyncio.sleep(interval_seconds)

    async def _guarded_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("Scheduled tick failed")
