"""Bid admission: validate and record bids against an auction."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from ..config import AuctionConfig
from ..errors import BidRejected, RejectionReason
from ..storage import AuctionStore
from ..storage.base import load_snapshot
from ..transport.timestamps import Clock, utcnow
from .models import Auction, AuctionSnapshot, AuctionStatus, Bid, new_bid_id

logger = logging.getLogger(__name__)


def minimum_acceptable_bid(
    auction: Auction,
    increment_ratio: Decimal,
    require_opening_increment: bool = True,
) -> Decimal:
    """Smallest amount the next bid on ``auction`` may carry."""
    current = auction.current_highest_bid
    if current is None and not require_opening_increment:
        return auction.reserve_price
    basis = max(auction.reserve_price, current) if current is not None else auction.reserve_price
    return basis * (Decimal(1) + increment_ratio)


def parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise BidRejected(RejectionReason.INVALID_AMOUNT, "bid amount must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise BidRejected(RejectionReason.INVALID_AMOUNT, f"bid amount {value!r} is not a number") from exc
    if not amount.is_finite() or amount <= 0:
        raise BidRejected(RejectionReason.INVALID_AMOUNT, "bid amount must be positive and finite")
    return amount


class BidAdmission:
    def __init__(
        self,
        store: AuctionStore,
        config: AuctionConfig,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._increment_ratio = config.min_increment_ratio
        self._require_opening_increment = config.require_opening_increment
        self._clock = clock

    async def place_bid(self, auction_id: str, bidder_account: str, amount: Any) -> Bid:
        async with self._store.exclusive(auction_id):
            snapshot = await load_snapshot(self._store, auction_id, BidRejected)
            now = self._clock()
            value = self._validate(snapshot, bidder_account, amount, now)
            bid = Bid(
                id=new_bid_id(),
                auction_id=auction_id,
                bidder_account=bidder_account,
                amount=value,
                created_at=now,
                winning=True,
            )
            await self._store.insert_bid(auction_id, snapshot.version, bid)
        logger.info("bid accepted auction=%s bidder=%s amount=%s", auction_id, bidder_account, value)
        return bid

    def _validate(
        self,
        snapshot: AuctionSnapshot,
        bidder_account: str,
        amount: Any,
        now: datetime,
    ) -> Decimal:
        auction = snapshot.auction
        if auction.status is not AuctionStatus.ACTIVE:
            raise BidRejected(
                RejectionReason.AUCTION_NOT_ACTIVE,
                f"auction {auction.id} is {auction.status.value}",
            )
        if now < auction.start_time:
            raise BidRejected(RejectionReason.BIDDING_NOT_OPEN, "bidding has not started")
        if now >= auction.end_time:
            raise BidRejected(RejectionReason.BIDDING_CLOSED, "bidding has ended")
        if bidder_account == auction.seller_account:
            raise BidRejected(RejectionReason.SELF_BID, "sellers cannot bid on their own auction")
        value = parse_amount(amount)
        minimum = minimum_acceptable_bid(auction, self._increment_ratio, self._require_opening_increment)
        if value < minimum:
            raise BidRejected(
                RejectionReason.BELOW_MINIMUM_BID,
                f"bid must be at least {minimum}",
                minimum=minimum,
            )
        return value
