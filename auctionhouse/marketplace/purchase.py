"""Fixed-price purchases settled through the transfer ledger."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from ..auction import fsm
from ..auction.fsm import AuctionEvent
from ..auction.models import Asset, AssetStatus, FailureKind, OutcomeStatus
from ..config import SettlementConfig
from ..errors import ListingRejected, RejectionReason, TransferError, TransferTimeout
from ..events.publisher import SettlementPublisher
from ..ledger.billing import PayoutSplit, payout_split
from ..ledger.transfer import AssetLeg, TransferLedger, TransferRequest, ValueLeg
from ..storage import AuctionStore
from ..storage.base import load_listing_snapshot
from ..transport.canonical_json import canonical_hash
from ..transport.timestamps import Clock, utcnow
from .models import ListingSnapshot, ListingStatus, PurchaseOutcome

logger = logging.getLogger(__name__)


def purchase_token(listing_id: str) -> str:
    return canonical_hash({"listing_id": listing_id, "operation": "purchase"})


class PurchaseOrchestrator:
    """Sells an ACTIVE listing to the first buyer with one atomic ledger transfer.

    Like auction settlement, the ledger call happens inside the listing's
    exclusive scope and a ledger failure leaves the listing FAILED for
    reconciliation instead of being retried.
    """

    def __init__(
        self,
        store: AuctionStore,
        ledger: TransferLedger,
        config: SettlementConfig,
        platform_account: str,
        publisher: SettlementPublisher | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._config = config
        self._platform_account = platform_account
        self._publisher = publisher
        self._clock = clock

    async def purchase(self, listing_id: str, buyer_account: str) -> PurchaseOutcome:
        async with self._store.exclusive(listing_id):
            snapshot = await load_listing_snapshot(self._store, listing_id)
            listing = snapshot.listing
            if listing.purchase is not None and listing.purchase.buyer_account == buyer_account:
                return listing.purchase
            if listing.status is not ListingStatus.ACTIVE:
                raise ListingRejected(
                    RejectionReason.LISTING_NOT_ACTIVE,
                    f"listing {listing_id} is {listing.status.value}",
                )
            if buyer_account == listing.seller_account:
                raise ListingRejected(RejectionReason.SELF_PURCHASE, "sellers cannot buy their own listing")
            allowance = snapshot.allowance
            if allowance is None or not allowance.is_active or not allowance.authorization_ref:
                raise ListingRejected(
                    RejectionReason.ALLOWANCE_NOT_GRANTED,
                    f"listing {listing_id} has no active allowance grant",
                )
            now = self._clock()
            split = payout_split(listing.price, self._config.fee_ratio, self._config.amount_precision)
            request = self._build_request(snapshot, buyer_account, allowance.authorization_ref, split)
            try:
                transfer_id = await asyncio.wait_for(
                    self._ledger.execute_atomic_transfer(request),
                    timeout=self._config.transfer_timeout_seconds,
                )
            except (asyncio.TimeoutError, TransferTimeout):
                reason = f"ledger timed out after {self._config.transfer_timeout_seconds}s; outcome unknown"
                outcome = await self._fail(snapshot, buyer_account, split, reason, now)
            except TransferError as exc:
                outcome = await self._fail(snapshot, buyer_account, split, str(exc), now)
            except Exception as exc:
                logger.error("ledger call raised unexpectedly listing=%s", listing_id, exc_info=True)
                reason = f"ledger error: {type(exc).__name__}: {exc}"
                outcome = await self._fail(snapshot, buyer_account, split, reason, now)
            else:
                outcome = await self._complete(snapshot, buyer_account, split, transfer_id, now)
        await self._publish(outcome)
        return outcome

    async def _complete(
        self,
        snapshot: ListingSnapshot,
        buyer_account: str,
        split: PayoutSplit,
        transfer_id: str,
        now: datetime,
    ) -> PurchaseOutcome:
        listing = snapshot.listing
        outcome = PurchaseOutcome(
            listing_id=listing.id,
            status=OutcomeStatus.SOLD,
            completed_at=now,
            buyer_account=buyer_account,
            price=split.final_bid,
            seller_proceeds=split.seller_proceeds,
            platform_fee=split.platform_fee,
            transfer_id=transfer_id,
        )

        def _mutate(updated: ListingSnapshot) -> None:
            fsm.apply_listing(updated, AuctionEvent.SETTLE, now)
            updated.listing.buyer_account = buyer_account
            updated.listing.purchase = outcome
            if updated.asset is None:
                updated.asset = Asset(ref=updated.listing.asset_ref, owner_account=buyer_account)
            updated.asset.owner_account = buyer_account
            updated.asset.status = AssetStatus.SOLD
            updated.asset.listing_id = None
            updated.asset.last_sale_price = split.final_bid

        try:
            await self._store.atomic_update_listing(listing.id, snapshot.version, _mutate)
        except Exception:
            logger.error(
                "transfer %s committed on ledger but listing %s could not be recorded",
                transfer_id,
                listing.id,
                exc_info=True,
            )
            raise
        logger.info(
            "listing sold listing=%s buyer=%s price=%s transfer=%s",
            listing.id,
            buyer_account,
            split.final_bid,
            transfer_id,
        )
        return outcome

    async def _fail(
        self,
        snapshot: ListingSnapshot,
        buyer_account: str,
        split: PayoutSplit,
        reason: str,
        now: datetime,
    ) -> PurchaseOutcome:
        listing_id = snapshot.listing.id
        outcome = PurchaseOutcome(
            listing_id=listing_id,
            status=OutcomeStatus.FAILED,
            completed_at=now,
            buyer_account=buyer_account,
            price=split.final_bid,
            seller_proceeds=split.seller_proceeds,
            platform_fee=split.platform_fee,
            failure_kind=FailureKind.LEDGER,
            reason=reason,
        )

        def _mutate(updated: ListingSnapshot) -> None:
            fsm.apply_listing(updated, AuctionEvent.FAIL, now)
            updated.listing.purchase = outcome

        await self._store.atomic_update_listing(listing_id, snapshot.version, _mutate)
        logger.warning("purchase failed listing=%s reason=%s", listing_id, reason)
        return outcome

    def _build_request(
        self,
        snapshot: ListingSnapshot,
        buyer_account: str,
        authorization_ref: str,
        split: PayoutSplit,
    ) -> TransferRequest:
        listing = snapshot.listing
        value_legs = [ValueLeg(buyer_account, listing.seller_account, split.seller_proceeds)]
        if split.platform_fee > 0:
            value_legs.append(ValueLeg(buyer_account, self._platform_account, split.platform_fee))
        return TransferRequest(
            idempotency_token=purchase_token(listing.id),
            asset_leg=AssetLeg(listing.asset_ref, listing.seller_account, buyer_account),
            value_legs=tuple(value_legs),
            currency=listing.currency,
            memo=f"Marketplace Purchase: {listing.id}",
            authorization_ref=authorization_ref,
            metadata={"listing_id": listing.id},
        )

    async def _publish(self, outcome: PurchaseOutcome) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher.publish(outcome)
        except Exception:
            logger.warning("failed to publish purchase outcome listing=%s", outcome.listing_id, exc_info=True)
