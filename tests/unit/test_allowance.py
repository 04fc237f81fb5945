"""Tests for the allowance coordinator."""

from __future__ import annotations

from datetime import timedelta

import pytest

from auctionhouse.auction.models import AssetRef, AssetStatus, AuctionStatus, OutcomeStatus
from auctionhouse.errors import AllowanceRejected, RejectionReason


class TestGrant:
    @pytest.mark.asyncio
    async def test_grant_activates_started_auction(self, harness):
        auction_id = await harness.pending_auction()
        auction = await harness.store.get_auction(auction_id)

        snapshot = await harness.allowance.grant(auction.asset_ref, harness.seller, "auth-ref-1")

        assert snapshot.auction.status is AuctionStatus.ACTIVE
        assert snapshot.auction.allowance_granted is True
        assert snapshot.allowance.is_active
        assert snapshot.allowance.authorization_ref == "auth-ref-1"

    @pytest.mark.asyncio
    async def test_grant_before_start_keeps_auction_pending(self, harness):
        auction_id = await harness.pending_auction(starts_in=timedelta(minutes=30))
        auction = await harness.store.get_auction(auction_id)

        snapshot = await harness.allowance.grant(auction.asset_ref, harness.seller, "auth-ref-1")

        assert snapshot.auction.status is AuctionStatus.PENDING
        assert snapshot.auction.allowance_granted is True

    @pytest.mark.asyncio
    async def test_regrant_replaces_reference(self, harness):
        auction_id = await harness.active_auction()
        auction = await harness.store.get_auction(auction_id)
        snapshot = await harness.allowance.grant(auction.asset_ref, harness.seller, "auth-ref-2")
        assert snapshot.allowance.authorization_ref == "auth-ref-2"
        assert snapshot.auction.status is AuctionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_grant_requires_seller(self, harness):
        auction_id = await harness.pending_auction()
        auction = await harness.store.get_auction(auction_id)
        with pytest.raises(AllowanceRejected) as exc:
            await harness.allowance.grant(auction.asset_ref, harness.alice, "auth-ref-1")
        assert exc.value.reason is RejectionReason.NOT_ASSET_HOLDER

    @pytest.mark.asyncio
    async def test_grant_requires_authorization_reference(self, harness):
        auction_id = await harness.pending_auction()
        auction = await harness.store.get_auction(auction_id)
        with pytest.raises(AllowanceRejected) as exc:
            await harness.allowance.grant(auction.asset_ref, harness.seller, "")
        assert exc.value.reason is RejectionReason.MISSING_AUTHORIZATION

    @pytest.mark.asyncio
    async def test_grant_for_asset_without_auction(self, harness):
        with pytest.raises(AllowanceRejected) as exc:
            await harness.allowance.grant(AssetRef("0.0.1", 9), harness.seller, "auth-ref-1")
        assert exc.value.reason is RejectionReason.AUCTION_NOT_FOUND


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_with_bid_is_refused(self, harness):
        auction_id = await harness.active_auction()
        await harness.bidding.place_bid(auction_id, harness.alice, "150")
        auction = await harness.store.get_auction(auction_id)
        before = await harness.store.get_snapshot(auction_id)

        with pytest.raises(AllowanceRejected) as exc:
            await harness.allowance.revoke(auction.asset_ref, harness.seller)

        assert exc.value.reason is RejectionReason.HAS_ACTIVE_BIDS
        after = await harness.store.get_snapshot(auction_id)
        assert after.auction.status is AuctionStatus.ACTIVE
        assert after.version == before.version
        assert after.allowance.is_active

    @pytest.mark.asyncio
    async def test_revoke_cancels_auction_and_releases_asset(self, harness):
        auction_id = await harness.active_auction()
        auction = await harness.store.get_auction(auction_id)

        snapshot = await harness.allowance.revoke(auction.asset_ref, harness.seller)

        assert snapshot.auction.status is AuctionStatus.CANCELLED
        assert snapshot.auction.settlement.status is OutcomeStatus.CANCELLED
        assert snapshot.allowance.revoked is True
        assert snapshot.auction.allowance_granted is False
        asset = await harness.store.get_asset(auction.asset_ref)
        assert asset.status is AssetStatus.AVAILABLE
        assert asset.auction_id is None

    @pytest.mark.asyncio
    async def test_revoke_requires_seller(self, harness):
        auction_id = await harness.active_auction()
        auction = await harness.store.get_auction(auction_id)
        with pytest.raises(AllowanceRejected) as exc:
            await harness.allowance.revoke(auction.asset_ref, harness.bob)
        assert exc.value.reason is RejectionReason.NOT_ASSET_HOLDER
