"""Operational stats endpoint."""

from __future__ import annotations

from collections import Counter
from datetime import timedelta
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Request

from ..auction.models import AuctionStatus
from ..storage import AuctionStore
from ..transport.timestamps import Clock, utcnow

router = APIRouter(prefix="/admin", tags=["admin"])


class AuctionStatsService:
    """Aggregates marketplace figures from the auction store on demand."""

    def __init__(self, store: AuctionStore, ending_soon_seconds: int = 3600, clock: Clock = utcnow) -> None:
        self._store = store
        self._ending_soon = timedelta(seconds=ending_soon_seconds)
        self._clock = clock

    async def summary(self) -> dict[str, Any]:
        now = self._clock()
        auctions = await self._store.list_auctions()
        by_status: Counter[str] = Counter(auction.status.value for auction in auctions)
        live = [
            auction
            for auction in auctions
            if auction.status is AuctionStatus.ACTIVE and auction.start_time <= now < auction.end_time
        ]
        upcoming = sum(1 for auction in auctions if auction.status is AuctionStatus.PENDING and now < auction.start_time)
        ending_soon = sum(1 for auction in live if auction.end_time - now <= self._ending_soon)
        awaiting_settlement = sum(
            1 for auction in auctions if auction.status is AuctionStatus.ACTIVE and auction.end_time <= now
        )
        sold = [auction for auction in auctions if auction.settled and auction.winner_account]
        volume = sum((auction.current_highest_bid or Decimal(0) for auction in sold), Decimal(0))
        live_ids = {auction.id for auction in live}
        bidders: set[str] = set()
        total_bids = 0
        for auction in auctions:
            total_bids += auction.bid_count
            if auction.id in live_ids and auction.bid_count:
                snapshot = await self._store.get_snapshot(auction.id)
                bidders.update(bid.bidder_account for bid in snapshot.bids)
        return {
            "total_auctions": len(auctions),
            "live_auctions": len(live),
            "upcoming_auctions": upcoming,
            "ending_soon": ending_soon,
            "awaiting_settlement": awaiting_settlement,
            "settled_auctions": len(sold),
            "active_bidders": len(bidders),
            "total_bids": total_bids,
            "total_volume": str(volume),
            "average_sale": str(volume / len(sold)) if sold else "0",
            "status_distribution": dict(by_status),
        }


def _get_stats(request: Request) -> AuctionStatsService:
    return request.app.state.stats


@router.get("/stats")
async def stats(service: AuctionStatsService = Depends(_get_stats)) -> dict[str, Any]:
    return await service.summary()
