"""Storage backend factory."""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Protocol

from ..auction.models import Asset, AssetRef, Auction, AuctionSnapshot, Bid
from ..config import ServerConfig
from ..marketplace.models import Listing, ListingSnapshot
from .base import ListingMutator, Mutator
from .in_memory import InMemoryAuctionStore
from .postgres import PostgresAuctionStore
from .redis import RedisAuctionStore


class AuctionStore(Protocol):
    def exclusive(self, record_id: str) -> AsyncContextManager[None]:
        """Per-auction or per-listing mutual exclusion; raises ConcurrencyConflict on timeout."""
        ...

    async def create_auction(self, snapshot: AuctionSnapshot) -> AuctionSnapshot: ...

    async def create_listing(self, snapshot: ListingSnapshot) -> ListingSnapshot: ...

    async def get_snapshot(self, auction_id: str) -> AuctionSnapshot: ...

    async def get_listing_snapshot(self, listing_id: str) -> ListingSnapshot: ...

    async def get_auction(self, auction_id: str) -> Auction: ...

    async def get_asset(self, ref: AssetRef) -> Asset | None: ...

    async def put_asset(self, asset: Asset) -> Asset: ...

    async def find_auction_for_asset(self, ref: AssetRef) -> str | None: ...

    async def find_listing_for_asset(self, ref: AssetRef) -> str | None: ...

    async def list_due_auctions(self, now: datetime) -> list[Auction]: ...

    async def list_activatable_auctions(self, now: datetime) -> list[Auction]: ...

    async def list_auctions(self) -> list[Auction]: ...

    async def list_listings(self) -> list[Listing]: ...

    async def atomic_update_auction(
        self,
        auction_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> AuctionSnapshot:
        """Apply ``mutator`` and commit iff the stored version equals ``expected_version``."""
        ...

    async def atomic_update_listing(
        self,
        listing_id: str,
        expected_version: int,
        mutator: ListingMutator,
    ) -> ListingSnapshot: ...

    async def insert_bid(self, auction_id: str, expected_version: int, bid: Bid) -> AuctionSnapshot: ...

    async def update_asset(self, auction_id: str, expected_version: int, asset: Asset) -> AuctionSnapshot: ...

    async def close(self) -> None: ...


def build_storage(config: ServerConfig) -> AuctionStore:
    backend = config.store.backend
    options = dict(config.store.options)
    options.setdefault("lock_timeout_seconds", config.store.lock_timeout_seconds)
    if backend == "in_memory":
        return InMemoryAuctionStore(lock_timeout_seconds=options["lock_timeout_seconds"])
    if backend == "redis":
        return RedisAuctionStore(**options)
    if backend == "postgres":
        return PostgresAuctionStore(**options)
    raise ValueError(f"unknown storage backend {backend}")


__all__ = [
    "AuctionStore",
    "InMemoryAuctionStore",
    "ListingMutator",
    "Mutator",
    "PostgresAuctionStore",
    "RedisAuctionStore",
    "build_storage",
]
