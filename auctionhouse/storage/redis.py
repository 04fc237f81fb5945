"""Redis storage backend using redis-py asyncio client."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from redis import asyncio as aioredis
from redis.exceptions import WatchError

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
    decode,
    encode,
    is_activatable,
    is_due,
    prepare_commit,
)


class RedisAuctionStore(SnapshotStoreMixin):
    def __init__(
        self,
        *,
        url: str,
        prefix: str = "auctionhouse",
        lock_timeout_seconds: float = 5.0,
        lock_lease_seconds: float = 120.0,
    ) -> None:
        if not url:
            raise ValueError("redis url missing")
        self._redis = aioredis.from_url(url)
        self._prefix = prefix.rstrip(":")
        self._lock_timeout = lock_timeout_seconds
        self._lock_lease = lock_lease_seconds

    def _auction_key(self, auction_id: str) -> str:
        return f"{self._prefix}:auction:{auction_id}"

    def _bids_key(self, auction_id: str) -> str:
        return f"{self._prefix}:bids:{auction_id}"

    def _allowance_key(self, record_id: str) -> str:
        return f"{self._prefix}:allowance:{record_id}"

    def _listing_key(self, listing_id: str) -> str:
        return f"{self._prefix}:listing:{listing_id}"

    def _asset_key(self, ref: AssetRef) -> str:
        return f"{self._prefix}:asset:{asset_key(ref)}"

    def _index_key(self) -> str:
        return f"{self._prefix}:auctions"

    def _listing_index_key(self) -> str:
        return f"{self._prefix}:listings"

    @asynccontextmanager
    async def exclusive(self, record_id: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{self._prefix}:lock:{record_id}",
            timeout=self._lock_lease,
            blocking_timeout=self._lock_timeout,
        )
        if not await lock.acquire():
            raise ConcurrencyConflict(record_id, f"timed out waiting for {record_id}")
        try:
            yield
        finally:
            await lock.release()

    async def create_auction(self, snapshot: AuctionSnapshot) -> AuctionSnapshot:
        auction_id = snapshot.auction.id
        keys = [self._auction_key(auction_id)]
        if snapshot.asset is not None:
            keys.append(self._asset_key(snapshot.asset.ref))
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.watch(*keys)
            if await pipe.exists(self._auction_key(auction_id)):
                raise ConcurrencyConflict(auction_id, f"auction {auction_id} already exists")
            await self._check_asset_free(pipe, auction_id, snapshot.asset)
            pipe.multi()
            self._queue_write(pipe, snapshot)
            pipe.sadd(self._index_key(), auction_id)
            try:
                await pipe.execute()
            except WatchError as exc:
                raise ConcurrencyConflict(auction_id) from exc
        return snapshot.copy()

    async def create_listing(self, snapshot: ListingSnapshot) -> ListingSnapshot:
        listing_id = snapshot.listing.id
        keys = [self._listing_key(listing_id)]
        if snapshot.asset is not None:
            keys.append(self._asset_key(snapshot.asset.ref))
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.watch(*keys)
            if await pipe.exists(self._listing_key(listing_id)):
                raise ConcurrencyConflict(listing_id, f"listing {listing_id} already exists")
            await self._check_asset_free(pipe, listing_id, snapshot.asset)
            pipe.multi()
            self._queue_listing_write(pipe, snapshot)
            pipe.sadd(self._listing_index_key(), listing_id)
            try:
                await pipe.execute()
            except WatchError as exc:
                raise ConcurrencyConflict(listing_id) from exc
        return snapshot.copy()

    async def get_snapshot(self, auction_id: str) -> AuctionSnapshot:
        return await self._read(self._redis, auction_id)

    async def get_listing_snapshot(self, listing_id: str) -> ListingSnapshot:
        return await self._read_listing(self._redis, listing_id)

    async def get_auction(self, auction_id: str) -> Auction:
        raw = await self._redis.get(self._auction_key(auction_id))
        if raw is None:
            raise KeyError(auction_id)
        return Auction.from_dict(decode(raw))

    async def get_asset(self, ref: AssetRef) -> Asset | None:
        raw = await self._redis.get(self._asset_key(ref))
        return Asset.from_dict(decode(raw)) if raw is not None else None

    async def put_asset(self, asset: Asset) -> Asset:
        await self._redis.set(self._asset_key(asset.ref), encode(asset.to_dict()))
        return asset

    async def find_auction_for_asset(self, ref: AssetRef) -> str | None:
        asset = await self.get_asset(ref)
        return asset.auction_id if asset else None

    async def find_listing_for_asset(self, ref: AssetRef) -> str | None:
        asset = await self.get_asset(ref)
        return asset.listing_id if asset else None

    async def list_due_auctions(self, now: datetime) -> list[Auction]:
        records = await self._all_auction_records()
        return [Auction.from_dict(data) for data in records if is_due(data, now, parse_timestamp)]

    async def list_activatable_auctions(self, now: datetime) -> list[Auction]:
        records = await self._all_auction_records()
        return [Auction.from_dict(data) for data in records if is_activatable(data, now, parse_timestamp)]

    async def list_auctions(self) -> list[Auction]:
        return [Auction.from_dict(data) for data in await self._all_auction_records()]

    async def list_listings(self) -> list[Listing]:
        members = await self._redis.smembers(self._listing_index_key())
        ids = sorted(m.decode() if isinstance(m, bytes) else m for m in members)
        if not ids:
            return []
        values = await self._redis.mget([self._listing_key(listing_id) for listing_id in ids])
        return [Listing.from_dict(decode(value)) for value in values if value]

    async def atomic_update_auction(
        self,
        auction_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> AuctionSnapshot:
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.watch(
                self._auction_key(auction_id),
                self._bids_key(auction_id),
                self._allowance_key(auction_id),
            )
            current = await self._read(pipe, auction_id)
            await pipe.watch(self._asset_key(current.auction.asset_ref))
            updated = prepare_commit(current, expected_version, mutator)
            pipe.multi()
            self._queue_write(pipe, updated)
            try:
                await pipe.execute()
            except WatchError as exc:
                raise ConcurrencyConflict(auction_id) from exc
        return updated

    async def atomic_update_listing(
        self,
        listing_id: str,
        expected_version: int,
        mutator: ListingMutator,
    ) -> ListingSnapshot:
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.watch(self._listing_key(listing_id), self._allowance_key(listing_id))
            current = await self._read_listing(pipe, listing_id)
            await pipe.watch(self._asset_key(current.listing.asset_ref))
            updated = prepare_commit(current, expected_version, mutator)
            pipe.multi()
            self._queue_listing_write(pipe, updated)
            try:
                await pipe.execute()
            except WatchError as exc:
                raise ConcurrencyConflict(listing_id) from exc
        return updated

    async def close(self) -> None:
        await self._redis.aclose()

    async def _all_auction_records(self) -> list[dict[str, Any]]:
        members = await self._redis.smembers(self._index_key())
        ids = sorted(m.decode() if isinstance(m, bytes) else m for m in members)
        if not ids:
            return []
        values = await self._redis.mget([self._auction_key(auction_id) for auction_id in ids])
        return [decode(value) for value in values if value]

    async def _read(self, client: Any, auction_id: str) -> AuctionSnapshot:
        raw = await client.get(self._auction_key(auction_id))
        if raw is None:
            raise KeyError(auction_id)
        auction = decode(raw)
        bids = await client.get(self._bids_key(auction_id))
        asset = await client.get(self._asset_key(AssetRef.from_dict(auction["asset"])))
        allowance = await client.get(self._allowance_key(auction_id))
        return AuctionSnapshot.from_dict(
            {
                "auction": auction,
                "bids": decode(bids) if bids is not None else [],
                "asset": decode(asset) if asset is not None else None,
                "allowance": decode(allowance) if allowance is not None else None,
            }
        )

    def _queue_write(self, pipe: Any, snapshot: AuctionSnapshot) -> None:
        auction_id = snapshot.auction.id
        pipe.set(self._auction_key(auction_id), encode(snapshot.auction.to_dict()))
        pipe.set(self._bids_key(auction_id), encode([bid.to_dict() for bid in snapshot.bids]))
        if snapshot.asset is not None:
            pipe.set(self._asset_key(snapshot.asset.ref), encode(snapshot.asset.to_dict()))
        if snapshot.allowance is not None:
            pipe.set(self._allowance_key(auction_id), encode(snapshot.allowance.to_dict()))

    def _queue_listing_write(self, pipe: Any, snapshot: ListingSnapshot) -> None:
        listing_id = snapshot.listing.id
        pipe.set(self._listing_key(listing_id), encode(snapshot.listing.to_dict()))
        if snapshot.asset is not None:
            pipe.set(self._asset_key(snapshot.asset.ref), encode(snapshot.asset.to_dict()))
        if snapshot.allowance is not None:
            pipe.set(self._allowance_key(listing_id), encode(snapshot.allowance.to_dict()))

    async def _read_listing(self, client: Any, listing_id: str) -> ListingSnapshot:
        raw = await client.get(self._listing_key(listing_id))
        if raw is None:
            raise KeyError(listing_id)
        listing = decode(raw)
        asset = await client.get(self._asset_key(AssetRef.from_dict(listing["asset"])))
        allowance = await client.get(self._allowance_key(listing_id))
        return ListingSnapshot.from_dict(
            {
                "listing": listing,
                "asset": decode(asset) if asset is not None else None,
                "allowance": decode(allowance) if allowance is not None else None,
            }
        )

    async def _check_asset_free(self, client: Any, record_id: str, asset: Asset | None) -> None:
        if asset is None:
            return
        raw = await client.get(self._asset_key(asset.ref))
        holder = attached_to(decode(raw)) if raw is not None else None
        if holder:
            raise ConcurrencyConflict(record_id, f"asset {asset.ref} is already attached to {holder}")
