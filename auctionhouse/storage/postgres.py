"""Postgres storage backend leveraging asyncpg."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import asyncpg

from ..auction.models import Asset, AssetRef, Auction, AuctionSnapshot
from ..errors import ConcurrencyConflict
from ..marketplace.models import Listing, ListingSnapshot
from .base import (
    ListingMutator,
    Mutator,
    SnapshotStoreMixin,
    asset_key,
    attached_to,
    decode,
    encode,
    prepare_commit,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS auctions (
    id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    status TEXT NOT NULL,
    settled BOOLEAN NOT NULL DEFAULT FALSE,
    allowance_granted BOOLEAN NOT NULL DEFAULT FALSE,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ NOT NULL,
    data JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_auctions_due ON auctions (status, settled, end_time);
CREATE TABLE IF NOT EXISTS bids (
    id TEXT PRIMARY KEY,
    auction_id TEXT NOT NULL REFERENCES auctions(id),
    data JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_bids_auction ON bids (auction_id);
CREATE TABLE IF NOT EXISTS assets (
    asset_key TEXT PRIMARY KEY,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS listings (
    id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    status TEXT NOT NULL,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS allowances (
    record_id TEXT PRIMARY KEY,
    data JSONB NOT NULL
);
"""


class PostgresAuctionStore(SnapshotStoreMixin):
    def __init__(
        self,
        *,
        dsn: str | None = None,
        lock_timeout_seconds: float = 5.0,
        lock_poll_seconds: float = 0.05,
        **connect_kwargs: Any,
    ) -> None:
        if not dsn and not connect_kwargs:
            raise ValueError("postgres connection details missing")
        self._dsn = dsn
        self._connect_kwargs = connect_kwargs
        self._lock_timeout = lock_timeout_seconds
        self._lock_poll = lock_poll_seconds
        self._pool: asyncpg.Pool | None = None

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self._dsn, **self._connect_kwargs)
            async with self._pool.acquire() as conn:
                await conn.execute(_SCHEMA)
        return self._pool

    @asynccontextmanager
    async def exclusive(self, record_id: str) -> AsyncIterator[None]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            deadline = time.monotonic() + self._lock_timeout
            while not await conn.fetchval("SELECT pg_try_advisory_lock(hashtext($1))", record_id):
                if time.monotonic() >= deadline:
                    raise ConcurrencyConflict(record_id, f"timed out waiting for {record_id}")
                await asyncio.sleep(self._lock_poll)
            try:
                yield
            finally:
                await conn.execute("SELECT pg_advisory_unlock(hashtext($1))", record_id)

    async def create_auction(self, snapshot: AuctionSnapshot) -> AuctionSnapshot:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._check_asset_free(conn, snapshot.auction.id, snapshot.asset)
                try:
                    await self._insert_auction(conn, snapshot.auction)
                except asyncpg.UniqueViolationError as exc:
                    raise ConcurrencyConflict(snapshot.auction.id, "auction already exists") from exc
                await self._write_children(conn, snapshot)
        return snapshot.copy()

    async def create_listing(self, snapshot: ListingSnapshot) -> ListingSnapshot:
        listing = snapshot.listing
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._check_asset_free(conn, listing.id, snapshot.asset)
                try:
                    await conn.execute(
                        "INSERT INTO listings(id, version, status, data) VALUES($1, $2, $3, $4)",
                        listing.id,
                        listing.version,
                        listing.status.value,
                        encode(listing.to_dict()).decode(),
                    )
                except asyncpg.UniqueViolationError as exc:
                    raise ConcurrencyConflict(listing.id, "listing already exists") from exc
                await self._write_shared(conn, listing.id, snapshot)
        return snapshot.copy()

    async def get_snapshot(self, auction_id: str) -> AuctionSnapshot:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            return await self._read(conn, auction_id)

    async def get_listing_snapshot(self, listing_id: str) -> ListingSnapshot:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            return await self._read_listing(conn, listing_id)

    async def get_auction(self, auction_id: str) -> Auction:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT data FROM auctions WHERE id=$1", auction_id)
        if not row:
            raise KeyError(auction_id)
        return Auction.from_dict(decode(row["data"]))

    async def get_asset(self, ref: AssetRef) -> Asset | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT data FROM assets WHERE asset_key=$1", asset_key(ref))
        return Asset.from_dict(decode(row["data"])) if row else None

    async def put_asset(self, asset: Asset) -> Asset:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await self._upsert_asset(conn, asset)
        return asset

    async def find_auction_for_asset(self, ref: AssetRef) -> str | None:
        asset = await self.get_asset(ref)
        return asset.auction_id if asset else None

    async def find_listing_for_asset(self, ref: AssetRef) -> str | None:
        asset = await self.get_asset(ref)
        return asset.listing_id if asset else None

    async def list_due_auctions(self, now: datetime) -> list[Auction]:
        return await self._select_auctions(
            "SELECT data FROM auctions WHERE status='ACTIVE' AND settled=FALSE AND end_time <= $1 ORDER BY end_time",
            now,
        )

    async def list_activatable_auctions(self, now: datetime) -> list[Auction]:
        return await self._select_auctions(
            "SELECT data FROM auctions WHERE status='PENDING' AND allowance_granted=TRUE AND start_time <= $1",
            now,
        )

    async def list_auctions(self) -> list[Auction]:
        return await self._select_auctions("SELECT data FROM auctions ORDER BY id")

    async def list_listings(self) -> list[Listing]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT data FROM listings ORDER BY id")
        return [Listing.from_dict(decode(row["data"])) for row in rows]

    async def atomic_update_auction(
        self,
        auction_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> AuctionSnapshot:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._read(conn, auction_id, for_update=True)
                updated = prepare_commit(current, expected_version, mutator)
                status = await conn.execute(
                    """UPDATE auctions
                       SET version=$3, status=$4, settled=$5, allowance_granted=$6,
                           start_time=$7, end_time=$8, data=$9
                       WHERE id=$1 AND version=$2""",
                    auction_id,
                    expected_version,
                    updated.auction.version,
                    updated.auction.status.value,
                    updated.auction.settled,
                    updated.auction.allowance_granted,
                    updated.auction.start_time,
                    updated.auction.end_time,
                    encode(updated.auction.to_dict()).decode(),
                )
                if status != "UPDATE 1":
                    raise ConcurrencyConflict(auction_id)
                await self._write_children(conn, updated)
        return updated

    async def atomic_update_listing(
        self,
        listing_id: str,
        expected_version: int,
        mutator: ListingMutator,
    ) -> ListingSnapshot:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._read_listing(conn, listing_id, for_update=True)
                updated = prepare_commit(current, expected_version, mutator)
                status = await conn.execute(
                    "UPDATE listings SET version=$3, status=$4, data=$5 WHERE id=$1 AND version=$2",
                    listing_id,
                    expected_version,
                    updated.listing.version,
                    updated.listing.status.value,
                    encode(updated.listing.to_dict()).decode(),
                )
                if status != "UPDATE 1":
                    raise ConcurrencyConflict(listing_id)
                await self._write_shared(conn, listing_id, updated)
        return updated

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _select_auctions(self, query: str, *args: Any) -> list[Auction]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [Auction.from_dict(decode(row["data"])) for row in rows]

    async def _check_asset_free(self, conn: asyncpg.Connection, record_id: str, asset: Asset | None) -> None:
        if asset is None:
            return
        row = await conn.fetchrow("SELECT data FROM assets WHERE asset_key=$1 FOR UPDATE", asset_key(asset.ref))
        holder = attached_to(decode(row["data"])) if row else None
        if holder:
            raise ConcurrencyConflict(record_id, f"asset {asset.ref} is already attached to {holder}")

    async def _read_shared(
        self,
        conn: asyncpg.Connection,
        record_id: str,
        record: dict[str, Any],
        suffix: str,
    ) -> tuple[Any, Any]:
        asset_row = await conn.fetchrow(
            f"SELECT data FROM assets WHERE asset_key=$1{suffix}",
            asset_key(AssetRef.from_dict(record["asset"])),
        )
        allowance_row = await conn.fetchrow("SELECT data FROM allowances WHERE record_id=$1", record_id)
        return (
            decode(asset_row["data"]) if asset_row else None,
            decode(allowance_row["data"]) if allowance_row else None,
        )

    async def _read(self, conn: asyncpg.Connection, auction_id: str, *, for_update: bool = False) -> AuctionSnapshot:
        suffix = " FOR UPDATE" if for_update else ""
        row = await conn.fetchrow(f"SELECT data FROM auctions WHERE id=$1{suffix}", auction_id)
        if not row:
            raise KeyError(auction_id)
        auction = decode(row["data"])
        bid_rows = await conn.fetch("SELECT data FROM bids WHERE auction_id=$1", auction_id)
        asset, allowance = await self._read_shared(conn, auction_id, auction, suffix)
        return AuctionSnapshot.from_dict(
            {
                "auction": auction,
                "bids": [decode(item["data"]) for item in bid_rows],
                "asset": asset,
                "allowance": allowance,
            }
        )

    async def _read_listing(
        self,
        conn: asyncpg.Connection,
        listing_id: str,
        *,
        for_update: bool = False,
    ) -> ListingSnapshot:
        suffix = " FOR UPDATE" if for_update else ""
        row = await conn.fetchrow(f"SELECT data FROM listings WHERE id=$1{suffix}", listing_id)
        if not row:
            raise KeyError(listing_id)
        listing = decode(row["data"])
        asset, allowance = await self._read_shared(conn, listing_id, listing, suffix)
        return ListingSnapshot.from_dict({"listing": listing, "asset": asset, "allowance": allowance})

    async def _insert_auction(self, conn: asyncpg.Connection, auction: Auction) -> None:
        await conn.execute(
            """INSERT INTO auctions(id, version, status, settled, allowance_granted, start_time, end_time, data)
               VALUES($1, $2, $3, $4, $5, $6, $7, $8)""",
            auction.id,
            auction.version,
            auction.status.value,
            auction.settled,
            auction.allowance_granted,
            auction.start_time,
            auction.end_time,
            encode(auction.to_dict()).decode(),
        )

    async def _write_children(self, conn: asyncpg.Connection, snapshot: AuctionSnapshot) -> None:
        for bid in snapshot.bids:
            await conn.execute(
                """INSERT INTO bids(id, auction_id, data) VALUES($1, $2, $3)
                   ON CONFLICT (id) DO UPDATE SET data=EXCLUDED.data""",
                bid.id,
                bid.auction_id,
                encode(bid.to_dict()).decode(),
            )
        await self._write_shared(conn, snapshot.auction.id, snapshot)

    async def _write_shared(
        self,
        conn: asyncpg.Connection,
        record_id: str,
        snapshot: AuctionSnapshot | ListingSnapshot,
    ) -> None:
        if snapshot.asset is not None:
            await self._upsert_asset(conn, snapshot.asset)
        if snapshot.allowance is not None:
            await conn.execute(
                """INSERT INTO allowances(record_id, data) VALUES($1, $2)
                   ON CONFLICT (record_id) DO UPDATE SET data=EXCLUDED.data""",
                record_id,
                encode(snapshot.allowance.to_dict()).decode(),
            )

    async def _upsert_asset(self, conn: asyncpg.Connection, asset: Asset) -> None:
        await conn.execute(
            """INSERT INTO assets(asset_key, data) VALUES($1, $2)
               ON CONFLICT (asset_key) DO UPDATE SET data=EXCLUDED.data""",
            asset_key(asset.ref),
            encode(asset.to_dict()).decode(),
        )
