"""Auction creation, activation, cancellation and reads."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from ..errors import AuctionRejected, RejectionReason, TransitionRejected
from ..ledger.settlement import recorded_outcome
from ..storage import AuctionStore
from ..storage.base import load_snapshot
from ..transport.timestamps import Clock, utcnow
from . import fsm
from .fsm import AuctionEvent
from .models import (
    Asset,
    AssetRef,
    AssetStatus,
    Auction,
    AuctionSnapshot,
    AuctionStatus,
    Bid,
    OutcomeStatus,
    SettlementOutcome,
    new_auction_id,
)

logger = logging.getLogger(__name__)


def _reserve(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise AuctionRejected(RejectionReason.INVALID_AMOUNT, "reserve price must be a number")
    try:
        reserve = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise AuctionRejected(RejectionReason.INVALID_AMOUNT, f"reserve price {value!r} is not a number") from exc
    if not reserve.is_finite() or reserve < 0:
        raise AuctionRejected(RejectionReason.INVALID_AMOUNT, "reserve price must be zero or positive")
    return reserve


class AuctionLifecycle:
    def __init__(self, store: AuctionStore, default_currency: str = "HBAR", clock: Clock = utcnow) -> None:
        self._store = store
        self._default_currency = default_currency
        self._clock = clock

    async def create_auction(
        self,
        seller_account: str,
        asset_ref: AssetRef,
        reserve_price: Any,
        start_time: datetime,
        end_time: datetime,
        title: str = "",
        description: str = "",
        currency: str | None = None,
    ) -> AuctionSnapshot:
        if end_time <= start_time:
            raise AuctionRejected(RejectionReason.INVALID_SCHEDULE, "end_time must be after start_time")
        reserve = _reserve(reserve_price)
        asset = await self._store.get_asset(asset_ref)
        if asset is None:
            asset = Asset(ref=asset_ref, owner_account=seller_account)
            logger.info("registered asset %s for %s", asset_ref, seller_account)
        if asset.owner_account != seller_account:
            raise AuctionRejected(
                RejectionReason.NOT_ASSET_HOLDER,
                f"{seller_account} does not hold asset {asset_ref}",
            )
        if asset.status not in (AssetStatus.AVAILABLE, AssetStatus.SOLD) or asset.is_attached:
            raise AuctionRejected(
                RejectionReason.ASSET_UNAVAILABLE,
                f"asset {asset_ref} is {asset.status.value}",
            )
        now = self._clock()
        auction = Auction(
            id=new_auction_id(),
            seller_account=seller_account,
            asset_ref=asset_ref,
            reserve_price=reserve,
            start_time=start_time,
            end_time=end_time,
            created_at=now,
            updated_at=now,
            title=title,
            description=description,
            currency=currency or self._default_currency,
        )
        asset.status = AssetStatus.IN_AUCTION
        asset.auction_id = auction.id
        created = await self._store.create_auction(AuctionSnapshot(auction=auction, asset=asset))
        logger.info("auction created auction=%s asset=%s seller=%s", auction.id, asset_ref, seller_account)
        return created

    async def activate(self, auction_id: str) -> AuctionSnapshot:
        """Move a PENDING auction to ACTIVE once its allowance is granted and it has started."""
        async with self._store.exclusive(auction_id):
            snapshot = await load_snapshot(self._store, auction_id)
            if snapshot.auction.status is AuctionStatus.ACTIVE:
                return snapshot
            now = self._clock()
            fsm.transition(snapshot.auction.status, AuctionEvent.ACTIVATE)
            fsm.check_guard(snapshot, AuctionEvent.ACTIVATE, now)
            updated = await self._store.atomic_update_auction(
                auction_id,
                snapshot.version,
                lambda current: fsm.apply(current, AuctionEvent.ACTIVATE, now),
            )
        logger.info("auction activated auction=%s", auction_id)
        return updated

    async def cancel(self, auction_id: str, requester_account: str) -> SettlementOutcome:
        async with self._store.exclusive(auction_id):
            snapshot = await load_snapshot(self._store, auction_id)
            auction = snapshot.auction
            if requester_account != auction.seller_account:
                raise AuctionRejected(
                    RejectionReason.NOT_ASSET_HOLDER,
                    "only the seller can cancel an auction",
                )
            if auction.status is AuctionStatus.CANCELLED:
                return recorded_outcome(snapshot)
            if auction.status.is_terminal:
                raise TransitionRejected(
                    RejectionReason.INVALID_TRANSITION,
                    f"auction {auction_id} is already {auction.status.value}",
                )
            now = self._clock()
            fsm.check_guard(snapshot, AuctionEvent.CANCEL, now)
            outcome = SettlementOutcome(
                auction_id=auction_id,
                status=OutcomeStatus.CANCELLED,
                settled_at=now,
                reason="cancelled by seller",
            )

            def _mutate(updated: AuctionSnapshot) -> None:
                fsm.apply(updated, AuctionEvent.CANCEL, now)
                updated.auction.settlement = outcome
                if updated.asset is not None and updated.asset.auction_id == auction_id:
                    updated.asset.release()

            await self._store.atomic_update_auction(auction_id, snapshot.version, _mutate)
        logger.info("auction cancelled auction=%s", auction_id)
        return outcome

    async def get_auction(self, auction_id: str) -> AuctionSnapshot:
        return await load_snapshot(self._store, auction_id)

    async def list_bids(self, auction_id: str) -> list[Bid]:
        snapshot = await load_snapshot(self._store, auction_id)
        return sorted(snapshot.bids, key=lambda bid: bid.created_at, reverse=True)

    async def list_auctions(self, status: AuctionStatus | None = None) -> list[Auction]:
        auctions = await self._store.list_auctions()
        if status is not None:
            auctions = [auction for auction in auctions if auction.status is status]
        return sorted(auctions, key=lambda auction: auction.created_at, reverse=True)
