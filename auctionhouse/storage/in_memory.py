"""In-memory storage backend for auctions, listings, bids, assets, and allowance grants."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from copy import deepcopy
from datetime import datetime
from typing import Any, AsyncIterator

from ..auction.models import Asset, AssetRef, Auction, AuctionSnapshot
from ..errors import ConcurrencyConflict
from ..marketplace.models import Listing, ListingSnapshot
from ..transport.timestamps import parse_timestamp
from .base import (
    ListingMutator,
    Mutator,
    SnapshotStoreMixin,
    asset_key,
    attached_to,
    is_activatable,
    is_due,
    prepare_commit,
)


class InMemoryAuctionStore(SnapshotStoreMixin):
    def __init__(self, *, lock_timeout_seconds: float = 5.0) -> None:
        self._auctions: dict[str, dict[str, Any]] = {}
        self._bids: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._assets: dict[str, dict[str, Any]] = {}
        self._allowances: dict[str, dict[str, Any]] = {}
        self._listings: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._record_locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}
        self._lock_timeout = lock_timeout_seconds

    @asynccontextmanager
    async def exclusive(self, record_id: str) -> AsyncIterator[None]:
        lock = self._record_locks.setdefault(record_id, asyncio.Lock())
        self._lock_holders[record_id] = self._lock_holders.get(record_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout)
            except asyncio.TimeoutError as exc:
                raise ConcurrencyConflict(record_id, f"timed out waiting for {record_id}") from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._lock_holders[record_id] -= 1
            if not self._lock_holders[record_id]:
                del self._lock_holders[record_id]
                del self._record_locks[record_id]

    @property
    def held_locks(self) -> int:
        return len(self._record_locks)

    async def create_auction(self, snapshot: AuctionSnapshot) -> AuctionSnapshot:
        auction_id = snapshot.auction.id
        async with self._lock:
            if auction_id in self._auctions:
                raise ConcurrencyConflict(auction_id, f"auction {auction_id} already exists")
            self._check_asset_free(auction_id, snapshot.asset)
            self._write(snapshot)
            return snapshot.copy()

    async def create_listing(self, snapshot: ListingSnapshot) -> ListingSnapshot:
        listing_id = snapshot.listing.id
        async with self._lock:
            if listing_id in self._listings:
                raise ConcurrencyConflict(listing_id, f"listing {listing_id} already exists")
            self._check_asset_free(listing_id, snapshot.asset)
            self._write_listing(snapshot)
            return snapshot.copy()

    async def get_snapshot(self, auction_id: str) -> AuctionSnapshot:
        async with self._lock:
            return self._read(auction_id)

    async def get_listing_snapshot(self, listing_id: str) -> ListingSnapshot:
        async with self._lock:
            return self._read_listing(listing_id)

    async def get_auction(self, auction_id: str) -> Auction:
        async with self._lock:
            try:
                return Auction.from_dict(deepcopy(self._auctions[auction_id]))
            except KeyError as exc:
                raise KeyError(f"auction {auction_id} not found") from exc

    async def get_asset(self, ref: AssetRef) -> Asset | None:
        async with self._lock:
            data = self._assets.get(asset_key(ref))
            return Asset.from_dict(deepcopy(data)) if data else None

    async def put_asset(self, asset: Asset) -> Asset:
        async with self._lock:
            self._assets[asset_key(asset.ref)] = asset.to_dict()
            return asset

    async def find_auction_for_asset(self, ref: AssetRef) -> str | None:
        async with self._lock:
            data = self._assets.get(asset_key(ref))
            return data.get("auction_id") if data else None

    async def find_listing_for_asset(self, ref: AssetRef) -> str | None:
        async with self._lock:
            data = self._assets.get(asset_key(ref))
            return data.get("listing_id") if data else None

    async def list_due_auctions(self, now: datetime) -> list[Auction]:
        async with self._lock:
            return [
                Auction.from_dict(deepcopy(data))
                for data in self._auctions.values()
                if is_due(data, now, parse_timestamp)
            ]

    async def list_activatable_auctions(self, now: datetime) -> list[Auction]:
        async with self._lock:
            return [
                Auction.from_dict(deepcopy(data))
                for data in self._auctions.values()
                if is_activatable(data, now, parse_timestamp)
            ]

    async def list_auctions(self) -> list[Auction]:
        async with self._lock:
            return [Auction.from_dict(deepcopy(data)) for data in self._auctions.values()]

    async def list_listings(self) -> list[Listing]:
        async with self._lock:
            return [Listing.from_dict(deepcopy(data)) for data in self._listings.values()]

    async def atomic_update_auction(
        self,
        auction_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> AuctionSnapshot:
        async with self._lock:
            current = self._read(auction_id)
            updated = prepare_commit(current, expected_version, mutator)
            self._write(updated)
            return updated.copy()

    async def atomic_update_listing(
        self,
        listing_id: str,
        expected_version: int,
        mutator: ListingMutator,
    ) -> ListingSnapshot:
        async with self._lock:
            current = self._read_listing(listing_id)
            updated = prepare_commit(current, expected_version, mutator)
            self._write_listing(updated)
            return updated.copy()

    async def close(self) -> None:
        return None

    def _check_asset_free(self, record_id: str, asset: Asset | None) -> None:
        if asset is None:
            return
        holder = attached_to(self._assets.get(asset_key(asset.ref)))
        if holder:
            raise ConcurrencyConflict(record_id, f"asset {asset.ref} is already attached to {holder}")

    def _asset_for(self, record: dict[str, Any]) -> dict[str, Any] | None:
        asset = self._assets.get(asset_key(AssetRef.from_dict(record["asset"])))
        return deepcopy(asset) if asset else None

    def _read(self, auction_id: str) -> AuctionSnapshot:
        try:
            auction = deepcopy(self._auctions[auction_id])
        except KeyError as exc:
            raise KeyError(f"auction {auction_id} not found") from exc
        return AuctionSnapshot.from_dict(
            {
                "auction": auction,
                "bids": deepcopy(self._bids.get(auction_id, [])),
                "asset": self._asset_for(auction),
                "allowance": deepcopy(self._allowances.get(auction_id)),
            }
        )

    def _read_listing(self, listing_id: str) -> ListingSnapshot:
        try:
            listing = deepcopy(self._listings[listing_id])
        except KeyError as exc:
            raise KeyError(f"listing {listing_id} not found") from exc
        return ListingSnapshot.from_dict(
            {
                "listing": listing,
                "asset": self._asset_for(listing),
                "allowance": deepcopy(self._allowances.get(listing_id)),
            }
        )

    def _write(self, snapshot: AuctionSnapshot) -> None:
        auction_id = snapshot.auction.id
        self._auctions[auction_id] = snapshot.auction.to_dict()
        self._bids[auction_id] = [bid.to_dict() for bid in snapshot.bids]
        self._write_shared(auction_id, snapshot)

    def _write_listing(self, snapshot: ListingSnapshot) -> None:
        self._listings[snapshot.listing.id] = snapshot.listing.to_dict()
        self._write_shared(snapshot.listing.id, snapshot)

    def _write_shared(self, record_id: str, snapshot: AuctionSnapshot | ListingSnapshot) -> None:
        if snapshot.asset is not None:
            self._assets[asset_key(snapshot.asset.ref)] = snapshot.asset.to_dict()
        if snapshot.allowance is not None:
            self._allowances[record_id] = snapshot.allowance.to_dict()
