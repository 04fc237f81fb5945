"""Fixed-price listing creation, removal and reads."""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from ..auction import fsm
from ..auction.fsm import AuctionEvent
from ..auction.models import Asset, AssetRef, AssetStatus
from ..errors import ListingRejected, RejectionReason, TransitionRejected
from ..storage import AuctionStore
from ..storage.base import load_listing_snapshot
from ..transport.timestamps import Clock, utcnow
from .models import Listing, ListingSnapshot, ListingStatus, new_listing_id

logger = logging.getLogger(__name__)


def parse_price(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ListingRejected(RejectionReason.INVALID_AMOUNT, "price must be a number")
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ListingRejected(RejectionReason.INVALID_AMOUNT, f"price {value!r} is not a number") from exc
    if not price.is_finite() or price <= 0:
        raise ListingRejected(RejectionReason.INVALID_AMOUNT, "price must be positive and finite")
    return price


class ListingService:
    def __init__(self, store: AuctionStore, default_currency: str = "HBAR", clock: Clock = utcnow) -> None:
        self._store = store
        self._default_currency = default_currency
        self._clock = clock

    async def create_listing(
        self,
        seller_account: str,
        asset_ref: AssetRef,
        price: Any,
        title: str = "",
        currency: str | None = None,
    ) -> ListingSnapshot:
        """Create a PENDING listing; it goes live once the seller grants the allowance."""
        amount = parse_price(price)
        asset = await self._store.get_asset(asset_ref)
        if asset is None:
            asset = Asset(ref=asset_ref, owner_account=seller_account)
            logger.info("registered asset %s for %s", asset_ref, seller_account)
        if asset.owner_account != seller_account:
            raise ListingRejected(
                RejectionReason.NOT_ASSET_HOLDER,
                f"{seller_account} does not hold asset {asset_ref}",
            )
        if asset.status not in (AssetStatus.AVAILABLE, AssetStatus.SOLD) or asset.is_attached:
            raise ListingRejected(
                RejectionReason.ASSET_UNAVAILABLE,
                f"asset {asset_ref} is {asset.status.value}",
            )
        now = self._clock()
        listing = Listing(
            id=new_listing_id(),
            seller_account=seller_account,
            asset_ref=asset_ref,
            price=amount,
            created_at=now,
            updated_at=now,
            title=title,
            currency=currency or self._default_currency,
        )
        asset.status = AssetStatus.LISTED
        asset.listing_id = listing.id
        created = await self._store.create_listing(ListingSnapshot(listing=listing, asset=asset))
        logger.info("listing created listing=%s asset=%s price=%s", listing.id, asset_ref, amount)
        return created

    async def remove_listing(self, listing_id: str, requester_account: str) -> ListingSnapshot:
        async with self._store.exclusive(listing_id):
            snapshot = await load_listing_snapshot(self._store, listing_id)
            listing = snapshot.listing
            if requester_account != listing.seller_account:
                raise ListingRejected(RejectionReason.NOT_ASSET_HOLDER, "only the seller can remove a listing")
            if listing.status is ListingStatus.CANCELLED:
                return snapshot
            if listing.status.is_terminal:
                raise TransitionRejected(
                    RejectionReason.INVALID_TRANSITION,
                    f"listing {listing_id} is already {listing.status.value}",
                )
            now = self._clock()

            def _mutate(updated: ListingSnapshot) -> None:
                fsm.apply_listing(updated, AuctionEvent.CANCEL, now)
                updated.listing.allowance_granted = False
                if updated.asset is not None and updated.asset.listing_id == listing_id:
                    updated.asset.release()

            updated = await self._store.atomic_update_listing(listing_id, snapshot.version, _mutate)
        logger.info("listing removed listing=%s", listing_id)
        return updated

    async def get_listing(self, listing_id: str) -> ListingSnapshot:
        return await load_listing_snapshot(self._store, listing_id)

    async def list_listings(self, status: ListingStatus | None = None) -> list[Listing]:
        listings = await self._store.list_listings()
        if status is not None:
            listings = [listing for listing in listings if listing.status is status]
        return sorted(listings, key=lambda listing: listing.created_at, reverse=True)
