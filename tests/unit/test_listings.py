"""Tests for fixed-price listings and marketplace purchases."""

from __future__ import annotations

from decimal import Decimal

import pytest

from auctionhouse.auction.models import AssetStatus, FailureKind, OutcomeStatus
from auctionhouse.errors import (
    AllowanceRejected,
    AuctionRejected,
    ListingRejected,
    RejectionReason,
    TransferError,
    TransitionRejected,
)
from auctionhouse.ledger.transfer import ValueLeg
from auctionhouse.marketplace.listings import parse_price
from auctionhouse.marketplace.models import ListingStatus
from auctionhouse.marketplace.purchase import purchase_token


class TestCreateListing:
    @pytest.mark.asyncio
    async def test_new_listing_is_pending_and_holds_asset(self, harness):
        listing_id = await harness.pending_listing(price="100")

        snapshot = await harness.listings.get_listing(listing_id)

        assert snapshot.listing.status is ListingStatus.PENDING
        assert snapshot.listing.price == Decimal("100")
        assert snapshot.listing.currency == "HBAR"
        assert snapshot.asset.status is AssetStatus.LISTED
        assert snapshot.asset.listing_id == listing_id

    @pytest.mark.asyncio
    async def test_listed_asset_cannot_be_auctioned(self, harness):
        listing_id = await harness.pending_listing()
        snapshot = await harness.listings.get_listing(listing_id)
        with pytest.raises(AuctionRejected) as exc:
            await harness.pending_auction(asset=snapshot.listing.asset_ref)
        assert exc.value.reason is RejectionReason.ASSET_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_only_holder_can_list(self, harness):
        listing_id = await harness.pending_listing()
        snapshot = await harness.listings.get_listing(listing_id)
        with pytest.raises(ListingRejected) as exc:
            await harness.listings.create_listing(harness.alice, snapshot.listing.asset_ref, "10")
        assert exc.value.reason is RejectionReason.NOT_ASSET_HOLDER

    @pytest.mark.parametrize("price", ["0", "-5", "abc", None, True, "NaN"])
    def test_invalid_prices_are_rejected(self, price):
        with pytest.raises(ListingRejected) as exc:
            parse_price(price)
        assert exc.value.reason is RejectionReason.INVALID_AMOUNT

    @pytest.mark.asyncio
    async def test_list_listings_filters_by_status(self, harness):
        pending = await harness.pending_listing()
        harness.clock.advance(seconds=1)
        active = await harness.active_listing()

        everything = await harness.listings.list_listings()
        live = await harness.listings.list_listings(ListingStatus.ACTIVE)

        assert [listing.id for listing in everything] == [active, pending]
        assert [listing.id for listing in live] == [active]

    @pytest.mark.asyncio
    async def test_unknown_listing_is_rejected(self, harness):
        with pytest.raises(ListingRejected) as exc:
            await harness.listings.get_listing("lst_missing")
        assert exc.value.reason is RejectionReason.LISTING_NOT_FOUND


class TestListingAllowance:
    @pytest.mark.asyncio
    async def test_grant_activates_listing(self, harness):
        listing_id = await harness.pending_listing()
        ref = (await harness.listings.get_listing(listing_id)).listing.asset_ref

        snapshot = await harness.allowance.grant(ref, harness.seller, "auth-ref-1")

        assert snapshot.listing.status is ListingStatus.ACTIVE
        assert snapshot.listing.allowance_granted is True
        assert snapshot.allowance.target_id == listing_id
        assert snapshot.allowance.is_active

    @pytest.mark.asyncio
    async def test_grant_requires_seller(self, harness):
        listing_id = await harness.pending_listing()
        ref = (await harness.listings.get_listing(listing_id)).listing.asset_ref
        with pytest.raises(AllowanceRejected) as exc:
            await harness.allowance.grant(ref, harness.alice, "auth-ref-1")
        assert exc.value.reason is RejectionReason.NOT_ASSET_HOLDER

    @pytest.mark.asyncio
    async def test_revoke_cancels_listing_and_releases_asset(self, harness):
        listing_id = await harness.active_listing()
        ref = (await harness.listings.get_listing(listing_id)).listing.asset_ref

        snapshot = await harness.allowance.revoke(ref, harness.seller)

        assert snapshot.listing.status is ListingStatus.CANCELLED
        assert snapshot.listing.allowance_granted is False
        assert snapshot.allowance.is_active is False
        assert snapshot.asset.status is AssetStatus.AVAILABLE
        assert snapshot.asset.listing_id is None

    @pytest.mark.asyncio
    async def test_released_asset_can_be_listed_again(self, harness):
        listing_id = await harness.active_listing()
        ref = (await harness.listings.get_listing(listing_id)).listing.asset_ref
        await harness.allowance.revoke(ref, harness.seller)

        relisted = await harness.listings.create_listing(harness.seller, ref, "80")

        assert relisted.listing.id != listing_id
        assert relisted.asset.listing_id == relisted.listing.id


class TestRemoveListing:
    @pytest.mark.asyncio
    async def test_seller_removes_listing(self, harness):
        listing_id = await harness.active_listing()

        snapshot = await harness.listings.remove_listing(listing_id, harness.seller)

        assert snapshot.listing.status is ListingStatus.CANCELLED
        assert snapshot.asset.status is AssetStatus.AVAILABLE
        again = await harness.listings.remove_listing(listing_id, harness.seller)
        assert again.version == snapshot.version

    @pytest.mark.asyncio
    async def test_only_seller_can_remove(self, harness):
        listing_id = await harness.pending_listing()
        with pytest.raises(ListingRejected) as exc:
            await harness.listings.remove_listing(listing_id, harness.alice)
        assert exc.value.reason is RejectionReason.NOT_ASSET_HOLDER

    @pytest.mark.asyncio
    async def test_sold_listing_cannot_be_removed(self, harness):
        listing_id = await harness.active_listing()
        await harness.purchases.purchase(listing_id, harness.alice)
        with pytest.raises(TransitionRejected) as exc:
            await harness.listings.remove_listing(listing_id, harness.seller)
        assert exc.value.reason is RejectionReason.INVALID_TRANSITION


class TestPurchase:
    @pytest.mark.asyncio
    async def test_purchase_transfers_asset_and_splits_payment(self, harness):
        listing_id = await harness.active_listing(price="100")

        outcome = await harness.purchases.purchase(listing_id, harness.alice)

        assert outcome.success
        assert outcome.status is OutcomeStatus.SOLD
        assert outcome.platform_fee == Decimal("2.5")
        assert outcome.seller_proceeds == Decimal("97.5")
        assert outcome.transfer_id == "tx_0001"
        request = harness.ledger.calls[0]
        assert request.idempotency_token == purchase_token(listing_id)
        assert request.asset_leg.from_account == harness.seller
        assert request.asset_leg.to_account == harness.alice
        assert request.value_legs == (
            ValueLeg(harness.alice, harness.seller, Decimal("97.5")),
            ValueLeg(harness.alice, harness.platform, Decimal("2.5")),
        )
        assert request.authorization_ref == "auth-ref-1"
        snapshot = await harness.listings.get_listing(listing_id)
        assert snapshot.listing.status is ListingStatus.SOLD
        assert snapshot.listing.buyer_account == harness.alice
        assert snapshot.asset.owner_account == harness.alice
        assert snapshot.asset.status is AssetStatus.SOLD
        assert snapshot.asset.listing_id is None
        assert snapshot.asset.last_sale_price == Decimal("100")
        harness.publisher.publish.assert_awaited_once_with(outcome)

    @pytest.mark.asyncio
    async def test_same_buyer_replay_returns_recorded_outcome(self, harness):
        listing_id = await harness.active_listing()
        first = await harness.purchases.purchase(listing_id, harness.alice)
        second = await harness.purchases.purchase(listing_id, harness.alice)
        assert second.to_dict() == first.to_dict()
        assert len(harness.ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_second_buyer_is_rejected(self, harness):
        listing_id = await harness.active_listing()
        await harness.purchases.purchase(listing_id, harness.alice)
        with pytest.raises(ListingRejected) as exc:
            await harness.purchases.purchase(listing_id, harness.bob)
        assert exc.value.reason is RejectionReason.LISTING_NOT_ACTIVE
        assert len(harness.ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_seller_cannot_buy_own_listing(self, harness):
        listing_id = await harness.active_listing()
        with pytest.raises(ListingRejected) as exc:
            await harness.purchases.purchase(listing_id, harness.seller)
        assert exc.value.reason is RejectionReason.SELF_PURCHASE
        assert harness.ledger.calls == []

    @pytest.mark.asyncio
    async def test_pending_listing_cannot_be_bought(self, harness):
        listing_id = await harness.pending_listing()
        with pytest.raises(ListingRejected) as exc:
            await harness.purchases.purchase(listing_id, harness.alice)
        assert exc.value.reason is RejectionReason.LISTING_NOT_ACTIVE
        assert harness.ledger.calls == []

    @pytest.mark.asyncio
    async def test_ledger_failure_is_terminal(self, harness):
        listing_id = await harness.active_listing()
        harness.ledger.fail_for[listing_id] = TransferError("insufficient balance")

        outcome = await harness.purchases.purchase(listing_id, harness.alice)
        replay = await harness.purchases.purchase(listing_id, harness.alice)

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.failure_kind is FailureKind.LEDGER
        assert "insufficient balance" in outcome.reason
        assert replay.to_dict() == outcome.to_dict()
        assert len(harness.ledger.calls) == 1
        snapshot = await harness.listings.get_listing(listing_id)
        assert snapshot.listing.status is ListingStatus.FAILED
        assert snapshot.asset.owner_account == harness.seller
        assert snapshot.asset.listing_id == listing_id
        with pytest.raises(ListingRejected):
            await harness.purchases.purchase(listing_id, harness.bob)

    @pytest.mark.asyncio
    async def test_unexpected_ledger_exception_fails_listing(self, harness):
        listing_id = await harness.active_listing()
        harness.ledger.error = RuntimeError("socket closed")

        outcome = await harness.purchases.purchase(listing_id, harness.alice)

        assert outcome.status is OutcomeStatus.FAILED
        assert "RuntimeError" in outcome.reason
        snapshot = await harness.listings.get_listing(listing_id)
        assert snapshot.listing.status is ListingStatus.FAILED

    @pytest.mark.asyncio
    async def test_ledger_timeout_fails_listing(self, harness):
        harness.ledger.delay = 1.0
        listing_id = await harness.active_listing()

        outcome = await harness.purchases.purchase(listing_id, harness.alice)

        assert outcome.status is OutcomeStatus.FAILED
        assert "timed out" in outcome.reason

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_undo_sale(self, harness):
        listing_id = await harness.active_listing()
        harness.publisher.publish.side_effect = RuntimeError("broker down")

        outcome = await harness.purchases.purchase(listing_id, harness.alice)

        assert outcome.success
        snapshot = await harness.listings.get_listing(listing_id)
        assert snapshot.listing.status is ListingStatus.SOLD
