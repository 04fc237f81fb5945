"""Shared fixtures for the auction service tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from auctionhouse.auction.allowance import AllowanceCoordinator
from auctionhouse.auction.bidding import BidAdmission
from auctionhouse.auction.lifecycle import AuctionLifecycle
from auctionhouse.auction.models import AssetRef
from auctionhouse.config import parse_server_config
from auctionhouse.events.publisher import SettlementPublisher
from auctionhouse.ledger.settlement import SettlementOrchestrator
from auctionhouse.ledger.transfer import TransferRequest
from auctionhouse.marketplace.listings import ListingService
from auctionhouse.marketplace.purchase import PurchaseOrchestrator
from auctionhouse.scheduler.completion import CompletionScheduler
from auctionhouse.storage import InMemoryAuctionStore

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SELLER = "0.0.1001"
ALICE = "0.0.2001"
BOB = "0.0.2002"
PLATFORM = "0.0.9999"
COLLECTION = "0.0.5005"


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingLedger:
    """Ledger double that records every request it receives."""

    def __init__(
        self,
        transfer_id: str = "tx_0001",
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.transfer_id = transfer_id
        self.error = error
        self.delay = delay
        self.fail_for: dict[str, Exception] = {}
        self.calls: list[TransferRequest] = []

    async def execute_atomic_transfer(self, request: TransferRequest) -> str:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        record_id = request.metadata.get("auction_id") or request.metadata.get("listing_id", "")
        failure = self.fail_for.get(record_id)
        if failure is not None:
            raise failure
        if self.error is not None:
            raise self.error
        return self.transfer_id

    async def close(self) -> None:
        return None


class Harness:
    """Wires every service against one in-memory store and a fake clock."""

    seller = SELLER
    alice = ALICE
    bob = BOB
    platform = PLATFORM

    def __init__(self, transfer_timeout_seconds: float = 0.2) -> None:
        self.config = parse_server_config(
            {
                "ledger": {"platform_account": PLATFORM},
                "settlement": {"transfer_timeout_seconds": transfer_timeout_seconds},
            }
        )
        self.clock = FakeClock()
        self.store = InMemoryAuctionStore(lock_timeout_seconds=1.0)
        self.ledger = RecordingLedger()
        self.publisher = AsyncMock(spec=SettlementPublisher)
        self.lifecycle = AuctionLifecycle(self.store, clock=self.clock)
        self.bidding = BidAdmission(self.store, self.config.auction, clock=self.clock)
        self.allowance = AllowanceCoordinator(self.store, clock=self.clock)
        self.orchestrator = SettlementOrchestrator(
            self.store,
            self.ledger,
            self.config.settlement,
            PLATFORM,
            publisher=self.publisher,
            clock=self.clock,
        )
        self.listings = ListingService(self.store, clock=self.clock)
        self.purchases = PurchaseOrchestrator(
            self.store,
            self.ledger,
            self.config.settlement,
            PLATFORM,
            publisher=self.publisher,
            clock=self.clock,
        )
        self.scheduler = CompletionScheduler(
            self.store,
            self.orchestrator,
            self.lifecycle,
            interval_seconds=0.01,
            clock=self.clock,
        )
        self._serial = 0

    def next_asset(self) -> AssetRef:
        self._serial += 1
        return AssetRef(COLLECTION, self._serial)

    async def pending_auction(
        self,
        reserve: Any = "100",
        seller: str = SELLER,
        asset: AssetRef | None = None,
        starts_in: timedelta = timedelta(0),
        duration: timedelta = timedelta(hours=1),
    ) -> str:
        start = self.clock() + starts_in
        snapshot = await self.lifecycle.create_auction(
            seller_account=seller,
            asset_ref=asset or self.next_asset(),
            reserve_price=reserve,
            start_time=start,
            end_time=start + duration,
            title="Lot",
        )
        return snapshot.auction.id

    async def active_auction(self, reserve: Any = "100", seller: str = SELLER) -> str:
        auction_id = await self.pending_auction(reserve=reserve, seller=seller)
        auction = await self.store.get_auction(auction_id)
        await self.allowance.grant(auction.asset_ref, seller, "auth-ref-1")
        return auction_id

    async def pending_listing(self, price: Any = "100", seller: str = SELLER) -> str:
        snapshot = await self.listings.create_listing(seller, self.next_asset(), price, title="Print")
        return snapshot.listing.id

    async def active_listing(self, price: Any = "100", seller: str = SELLER) -> str:
        listing_id = await self.pending_listing(price=price, seller=seller)
        snapshot = await self.listings.get_listing(listing_id)
        await self.allowance.grant(snapshot.listing.asset_ref, seller, "auth-ref-1")
        return listing_id

    def finish(self) -> None:
        self.clock.advance(hours=2)


@pytest.fixture
def harness() -> Harness:
    return Harness()
