"""Seller allowance grants that gate auction and listing activation."""

from __future__ import annotations

import logging

from ..errors import AllowanceRejected, RejectionReason
from ..storage import AuctionStore
from ..marketplace.models import LISTING_OPEN_STATUSES, ListingSnapshot, ListingStatus
from ..storage.base import load_listing_snapshot, load_snapshot
from ..transport.timestamps import Clock, utcnow
from . import fsm
from .fsm import AuctionEvent
from .models import (
    OPEN_STATUSES,
    AllowanceGrant,
    AssetRef,
    AuctionSnapshot,
    AuctionStatus,
    OutcomeStatus,
    SettlementOutcome,
)

logger = logging.getLogger(__name__)


class AllowanceCoordinator:
    def __init__(self, store: AuctionStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def grant(
        self,
        asset_ref: AssetRef,
        holder_account: str,
        authorization_ref: str,
    ) -> AuctionSnapshot | ListingSnapshot:
        """Record the seller's authorization for whatever the asset is attached to.

        An auction activates once it has started; a listing activates at once.
        """
        if not authorization_ref:
            raise AllowanceRejected(RejectionReason.MISSING_AUTHORIZATION, "authorization reference is required")
        listing_id = await self._store.find_listing_for_asset(asset_ref)
        if listing_id:
            return await self._grant_listing(listing_id, asset_ref, holder_account, authorization_ref)
        auction_id = await self._locate(asset_ref)
        async with self._store.exclusive(auction_id):
            snapshot = await self._load_open(auction_id, asset_ref)
            self._check_holder(snapshot.auction.seller_account, asset_ref, holder_account)
            now = self._clock()

            def _mutate(updated: AuctionSnapshot) -> None:
                granted_at = updated.allowance.granted_at if updated.allowance and updated.allowance.is_active else now
                updated.allowance = AllowanceGrant(
                    target_id=auction_id,
                    holder_account=holder_account,
                    authorization_ref=authorization_ref,
                    granted=True,
                    revoked=False,
                    granted_at=granted_at,
                )
                updated.auction.allowance_granted = True
                updated.auction.updated_at = now
                if updated.auction.status is AuctionStatus.PENDING and now >= updated.auction.start_time:
                    fsm.apply(updated, AuctionEvent.ACTIVATE, now)

            updated = await self._store.atomic_update_auction(auction_id, snapshot.version, _mutate)
        logger.info(
            "allowance granted auction=%s asset=%s status=%s",
            auction_id,
            asset_ref,
            updated.auction.status.value,
        )
        return updated

    async def revoke(self, asset_ref: AssetRef, holder_account: str) -> AuctionSnapshot | ListingSnapshot:
        """Withdraw the authorization and cancel the auction or listing; refused once bids exist."""
        listing_id = await self._store.find_listing_for_asset(asset_ref)
        if listing_id:
            return await self._revoke_listing(listing_id, asset_ref, holder_account)
        auction_id = await self._locate(asset_ref)
        async with self._store.exclusive(auction_id):
            snapshot = await self._load_open(auction_id, asset_ref)
            self._check_holder(snapshot.auction.seller_account, asset_ref, holder_account)
            if snapshot.bids or snapshot.auction.bid_count > 0:
                raise AllowanceRejected(
                    RejectionReason.HAS_ACTIVE_BIDS,
                    "cannot revoke allowance for an auction with bids",
                    bid_count=snapshot.auction.bid_count,
                )
            now = self._clock()

            def _mutate(updated: AuctionSnapshot) -> None:
                allowance = updated.allowance or AllowanceGrant(target_id=auction_id, holder_account=holder_account)
                allowance.revoked = True
                allowance.revoked_at = now
                updated.allowance = allowance
                updated.auction.allowance_granted = False
                fsm.apply(updated, AuctionEvent.CANCEL, now)
                updated.auction.settlement = SettlementOutcome(
                    auction_id=auction_id,
                    status=OutcomeStatus.CANCELLED,
                    settled_at=now,
                    reason="allowance revoked",
                )
                if updated.asset is not None and updated.asset.auction_id == auction_id:
                    updated.asset.release()

            updated = await self._store.atomic_update_auction(auction_id, snapshot.version, _mutate)
        logger.info("allowance revoked auction=%s asset=%s; auction cancelled", auction_id, asset_ref)
        return updated

    async def _grant_listing(
        self,
        listing_id: str,
        asset_ref: AssetRef,
        holder_account: str,
        authorization_ref: str,
    ) -> ListingSnapshot:
        async with self._store.exclusive(listing_id):
            snapshot = await self._load_open_listing(listing_id, asset_ref)
            self._check_holder(snapshot.listing.seller_account, asset_ref, holder_account)
            now = self._clock()

            def _mutate(updated: ListingSnapshot) -> None:
                granted_at = updated.allowance.granted_at if updated.allowance and updated.allowance.is_active else now
                updated.allowance = AllowanceGrant(
                    target_id=listing_id,
                    holder_account=holder_account,
                    authorization_ref=authorization_ref,
                    granted=True,
                    granted_at=granted_at,
                )
                updated.listing.allowance_granted = True
                updated.listing.updated_at = now
                if updated.listing.status is ListingStatus.PENDING:
                    fsm.apply_listing(updated, AuctionEvent.ACTIVATE, now)

            updated = await self._store.atomic_update_listing(listing_id, snapshot.version, _mutate)
        logger.info(
            "allowance granted listing=%s asset=%s status=%s",
            listing_id,
            asset_ref,
            updated.listing.status.value,
        )
        return updated

    async def _revoke_listing(self, listing_id: str, asset_ref: AssetRef, holder_account: str) -> ListingSnapshot:
        async with self._store.exclusive(listing_id):
            snapshot = await self._load_open_listing(listing_id, asset_ref)
            self._check_holder(snapshot.listing.seller_account, asset_ref, holder_account)
            now = self._clock()

            def _mutate(updated: ListingSnapshot) -> None:
                allowance = updated.allowance or AllowanceGrant(target_id=listing_id, holder_account=holder_account)
                allowance.revoked = True
                allowance.revoked_at = now
                updated.allowance = allowance
                updated.listing.allowance_granted = False
                fsm.apply_listing(updated, AuctionEvent.CANCEL, now)
                if updated.asset is not None and updated.asset.listing_id == listing_id:
                    updated.asset.release()

            updated = await self._store.atomic_update_listing(listing_id, snapshot.version, _mutate)
        logger.info("allowance revoked listing=%s asset=%s; listing cancelled", listing_id, asset_ref)
        return updated

    async def _load_open_listing(self, listing_id: str, asset_ref: AssetRef) -> ListingSnapshot:
        snapshot = await load_listing_snapshot(self._store, listing_id)
        if snapshot.listing.status not in LISTING_OPEN_STATUSES:
            raise AllowanceRejected(
                RejectionReason.LISTING_NOT_FOUND,
                f"no pending or active listing for asset {asset_ref}",
            )
        return snapshot

    async def _locate(self, asset_ref: AssetRef) -> str:
        auction_id = await self._store.find_auction_for_asset(asset_ref)
        if not auction_id:
            raise AllowanceRejected(
                RejectionReason.AUCTION_NOT_FOUND,
                f"no pending or active auction or listing for asset {asset_ref}",
            )
        return auction_id

    async def _load_open(self, auction_id: str, asset_ref: AssetRef) -> AuctionSnapshot:
        snapshot = await load_snapshot(self._store, auction_id, AllowanceRejected)
        if snapshot.auction.status not in OPEN_STATUSES:
            raise AllowanceRejected(
                RejectionReason.AUCTION_NOT_FOUND,
                f"no pending or active auction for asset {asset_ref}",
            )
        return snapshot

    @staticmethod
    def _check_holder(seller_account: str, asset_ref: AssetRef, holder_account: str) -> None:
        if holder_account != seller_account:
            raise AllowanceRejected(
                RejectionReason.NOT_ASSET_HOLDER,
                f"{holder_account} does not hold asset {asset_ref}",
            )
