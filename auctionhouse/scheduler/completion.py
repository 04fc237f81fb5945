"""Periodic activation and settlement of due auctions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from ..auction.lifecycle import AuctionLifecycle
from ..auction.models import OutcomeStatus, SettlementOutcome
from ..ledger.settlement import SettlementOrchestrator
from ..storage import AuctionStore
from ..transport.timestamps import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SchedulerReport:
    activated: list[str] = field(default_factory=list)
    processed: list[str] = field(default_factory=list)
    ended: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errored: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "activated": list(self.activated),
            "processed": list(self.processed),
            "ended": list(self.ended),
            "failed": list(self.failed),
            "errored": dict(self.errored),
        }


class CompletionScheduler:
    """Finds auctions that are due and hands each one to the settlement orchestrator.

    Every auction is handled in isolation: an exception while settling one
    auction is logged and reported without affecting the others. FAILED
    auctions are terminal and never come back from the due query.
    """

    def __init__(
        self,
        store: AuctionStore,
        orchestrator: SettlementOrchestrator,
        lifecycle: AuctionLifecycle,
        interval_seconds: float = 60.0,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._lifecycle = lifecycle
        self._interval = interval_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self.last_report: SchedulerReport | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SchedulerReport:
        report = SchedulerReport()
        now = self._clock()
        for auction in await self._store.list_activatable_auctions(now):
            try:
                await self._lifecycle.activate(auction.id)
            except Exception as exc:
                logger.warning("activation failed auction=%s reason=%s", auction.id, exc)
                report.errored[auction.id] = str(exc)
            else:
                report.activated.append(auction.id)

        due = await self._store.list_due_auctions(self._clock())
        results = await asyncio.gather(
            *(self._settle_one(auction.id) for auction in due),
            return_exceptions=True,
        )
        for auction, result in zip(due, results):
            report.processed.append(auction.id)
            if isinstance(result, BaseException):
                report.errored[auction.id] = str(result) or type(result).__name__
            elif result.status is OutcomeStatus.FAILED:
                report.failed.append(auction.id)
            else:
                report.ended.append(auction.id)
        self.last_report = report
        logger.info(
            "scheduler pass activated=%d processed=%d ended=%d failed=%d errored=%d",
            len(report.activated),
            len(report.processed),
            len(report.ended),
            len(report.failed),
            len(report.errored),
        )
        return report

    async def _settle_one(self, auction_id: str) -> SettlementOutcome:
        try:
            return await self._orchestrator.settle(auction_id)
        except Exception:
            logger.error("settlement attempt crashed auction=%s", auction_id, exc_info=True)
            raise

    async def start(self, interval_seconds: float | None = None) -> None:
        if self.running:
            return
        if interval_seconds is not None:
            self._interval = interval_seconds
        await self._safe_pass()
        self._task = asyncio.create_task(self._loop())
        logger.info("completion scheduler started interval=%ss", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("completion scheduler stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self._safe_pass()

    async def _safe_pass(self) -> None:
        try:
            await self.run_once()
        except Exception:
            logger.error("scheduler pass failed", exc_info=True)
