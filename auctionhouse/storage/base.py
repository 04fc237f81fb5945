"""Shared helpers for auction store backends."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, TypeVar

import orjson

from ..auction.models import Asset, AssetRef, AuctionSnapshot, Bid
from ..errors import AuctionRejected, ConcurrencyConflict, ListingRejected, RejectionReason
from ..marketplace.models import ListingSnapshot

Mutator = Callable[[AuctionSnapshot], None]
ListingMutator = Callable[[ListingSnapshot], None]

SnapshotT = TypeVar("SnapshotT", AuctionSnapshot, ListingSnapshot)


def encode(payload: Any) -> bytes:
    return orjson.dumps(payload)


def decode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview, str)):
        return orjson.loads(value)
    return value


def asset_key(ref: AssetRef) -> str:
    return f"{ref.collection_id}:{ref.serial_number}"


def prepare_commit(
    current: SnapshotT,
    expected_version: int,
    mutator: Callable[[SnapshotT], None],
) -> SnapshotT:
    """Apply ``mutator`` to a copy of ``current`` after the version check.

    The returned snapshot carries the bumped version and is what the backend
    must persist atomically.
    """
    record = current.record
    if current.version != expected_version:
        raise ConcurrencyConflict(
            record.id,
            f"{record.id} is at version {current.version}, expected {expected_version}",
        )
    updated = current.copy()
    mutator(updated)
    if updated.record.id != record.id:
        raise ValueError("mutator must not change the record id")
    if updated.asset and updated.asset.ref != record.asset_ref:
        raise ValueError("mutator must not swap the asset")
    updated.record.version = expected_version + 1
    return updated


def is_due(auction: dict[str, Any], now: datetime, parse: Callable[[str], datetime]) -> bool:
    return (
        auction["status"] == "ACTIVE"
        and not auction.get("settled", False)
        and parse(auction["end_time"]) <= now
    )


def is_activatable(
    auction: dict[str, Any],
    now: datetime,
    parse: Callable[[str], datetime],
) -> bool:
    return (
        auction["status"] == "PENDING"
        and auction.get("allowance_granted", False)
        and parse(auction["start_time"]) <= now
    )


class SnapshotStoreMixin:
    """``insert_bid`` and ``update_asset`` expressed through ``atomic_update_auction``."""

    async def insert_bid(self, auction_id: str, expected_version: int, bid: Bid) -> AuctionSnapshot:
        def _insert(snapshot: AuctionSnapshot) -> None:
            if bid.winning:
                for existing in snapshot.bids:
                    existing.winning = False
                snapshot.auction.current_highest_bid = bid.amount
            snapshot.bids.append(bid)
            snapshot.auction.bid_count = len(snapshot.bids)

        return await self.atomic_update_auction(auction_id, expected_version, _insert)  # type: ignore[attr-defined]

    async def update_asset(self, auction_id: str, expected_version: int, asset: Asset) -> AuctionSnapshot:
        def _replace(snapshot: AuctionSnapshot) -> None:
            snapshot.asset = asset

        return await self.atomic_update_auction(auction_id, expected_version, _replace)  # type: ignore[attr-defined]


async def load_snapshot(
    store: Any,
    auction_id: str,
    rejection: type[AuctionRejected] = AuctionRejected,
) -> AuctionSnapshot:
    """Read an auction snapshot, turning a store miss into ``AUCTION_NOT_FOUND``."""
    try:
        return await store.get_snapshot(auction_id)
    except KeyError as exc:
        raise rejection(RejectionReason.AUCTION_NOT_FOUND, f"auction {auction_id} not found") from exc


async def load_listing_snapshot(store: Any, listing_id: str) -> ListingSnapshot:
    try:
        return await store.get_listing_snapshot(listing_id)
    except KeyError as exc:
        raise ListingRejected(RejectionReason.LISTING_NOT_FOUND, f"listing {listing_id} not found") from exc


def attached_to(asset: dict[str, Any] | None) -> str | None:
    """Auction or listing id an asset record is currently attached to."""
    if not asset:
        return None
    return asset.get("auction_id") or asset.get("listing_id")
