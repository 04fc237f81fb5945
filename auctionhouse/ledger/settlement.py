"""Settlement orchestration for auctions that reached their end time."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from ..auction import fsm
from ..auction.fsm import AuctionEvent
from ..auction.models import (
    Asset,
    AssetStatus,
    AuctionSnapshot,
    AuctionStatus,
    Bid,
    FailureKind,
    OutcomeStatus,
    SettlementOutcome,
)
from ..config import SettlementConfig
from ..errors import DataIntegrityError, RejectionReason, SettlementRejected, TransferError, TransferTimeout
from ..events.publisher import SettlementPublisher
from ..storage import AuctionStore
from ..storage.base import load_snapshot
from ..transport.canonical_json import canonical_hash
from ..transport.timestamps import Clock, utcnow
from .billing import PayoutSplit, payout_split
from .transfer import AssetLeg, TransferLedger, TransferRequest, ValueLeg

logger = logging.getLogger(__name__)


def settlement_token(auction_id: str) -> str:
    """Idempotency token shared by every settlement attempt of one auction."""
    return canonical_hash({"auction_id": auction_id, "operation": "settlement"})


class SettlementOrchestrator:
    """Drives an auction from ACTIVE to ENDED or FAILED exactly once.

    The whole read, ledger call and commit happens inside the store's
    exclusive scope for the auction, so a concurrent caller waits and then
    observes the recorded outcome instead of calling the ledger again.
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

    async def settle(self, auction_id: str) -> SettlementOutcome:
        async with self._store.exclusive(auction_id):
            snapshot = await load_snapshot(self._store, auction_id, SettlementRejected)
            auction = snapshot.auction
            if auction.settled or auction.status.is_terminal:
                return recorded_outcome(snapshot)
            now = self._clock()
            if now < auction.end_time:
                raise SettlementRejected(
                    RejectionReason.NOT_YET_DUE,
                    f"auction {auction_id} ends at {auction.end_time.isoformat()}",
                )
            if auction.status is not AuctionStatus.ACTIVE:
                raise SettlementRejected(
                    RejectionReason.AUCTION_NOT_ACTIVE,
                    f"auction {auction_id} is {auction.status.value}",
                )
            winning = snapshot.winning_bid()
            if winning is None:
                outcome = await self._end_without_winner(snapshot, now)
            else:
                outcome = await self._settle_winner(snapshot, winning, now)
        await self._publish(outcome)
        return outcome

    async def _end_without_winner(self, snapshot: AuctionSnapshot, now: datetime) -> SettlementOutcome:
        auction_id = snapshot.auction.id
        outcome = SettlementOutcome(
            auction_id=auction_id,
            status=OutcomeStatus.ENDED_NO_WINNER,
            settled_at=now,
        )

        def _mutate(updated: AuctionSnapshot) -> None:
            fsm.apply(updated, AuctionEvent.SETTLE, now)
            updated.auction.settled = True
            updated.auction.winner_account = None
            updated.auction.settlement = outcome
            if updated.asset is not None and updated.asset.auction_id == auction_id:
                updated.asset.release()

        await self._store.atomic_update_auction(auction_id, snapshot.version, _mutate)
        logger.info("auction ended without winner auction=%s", auction_id)
        return outcome

    async def _settle_winner(self, snapshot: AuctionSnapshot, winning: Bid, now: datetime) -> SettlementOutcome:
        auction = snapshot.auction
        try:
            authorization_ref = self._resolve_authorization(snapshot)
            winner_account = self._resolve_winner(winning)
        except DataIntegrityError as exc:
            return await self._fail(snapshot, winning, FailureKind.DATA_INTEGRITY, str(exc), now)

        split = payout_split(winning.amount, self._config.fee_ratio, self._config.amount_precision)
        request = self._build_request(snapshot, winner_account, authorization_ref, split)
        try:
            transfer_id = await asyncio.wait_for(
                self._ledger.execute_atomic_transfer(request),
                timeout=self._config.transfer_timeout_seconds,
            )
        except (asyncio.TimeoutError, TransferTimeout):
            reason = f"ledger timed out after {self._config.transfer_timeout_seconds}s; outcome unknown"
            return await self._fail(snapshot, winning, FailureKind.LEDGER, reason, now, split)
        except TransferError as exc:
            return await self._fail(snapshot, winning, FailureKind.LEDGER, str(exc), now, split)
        except Exception as exc:
            logger.error("ledger call raised unexpectedly auction=%s", auction.id, exc_info=True)
            reason = f"ledger error: {type(exc).__name__}: {exc}"
            return await self._fail(snapshot, winning, FailureKind.LEDGER, reason, now, split)

        outcome = SettlementOutcome(
            auction_id=auction.id,
            status=OutcomeStatus.ENDED,
            settled_at=now,
            winner_account=winner_account,
            final_bid=split.final_bid,
            seller_proceeds=split.seller_proceeds,
            platform_fee=split.platform_fee,
            transfer_id=transfer_id,
        )

        def _mutate(updated: AuctionSnapshot) -> None:
            fsm.apply(updated, AuctionEvent.SETTLE, now)
            updated.auction.settled = True
            updated.auction.winner_account = winner_account
            updated.auction.settlement = outcome
            for bid in updated.bids:
                if bid.id == winning.id:
                    bid.settlement_tx_id = transfer_id
            if updated.asset is None:
                updated.asset = Asset(ref=updated.auction.asset_ref, owner_account=winner_account)
            updated.asset.owner_account = winner_account
            updated.asset.status = AssetStatus.SOLD
            updated.asset.auction_id = None
            updated.asset.last_sale_price = split.final_bid

        try:
            await self._store.atomic_update_auction(auction.id, snapshot.version, _mutate)
        except Exception:
            logger.error(
                "transfer %s committed on ledger but auction %s could not be recorded",
                transfer_id,
                auction.id,
                exc_info=True,
            )
            raise
        logger.info(
            "auction settled auction=%s winner=%s final=%s transfer=%s",
            auction.id,
            winner_account,
            split.final_bid,
            transfer_id,
        )
        return outcome

    async def _fail(
        self,
        snapshot: AuctionSnapshot,
        winning: Bid,
        kind: FailureKind,
        reason: str,
        now: datetime,
        split: PayoutSplit | None = None,
    ) -> SettlementOutcome:
        auction_id = snapshot.auction.id
        outcome = SettlementOutcome(
            auction_id=auction_id,
            status=OutcomeStatus.FAILED,
            settled_at=now,
            winner_account=winning.bidder_account or None,
            final_bid=winning.amount,
            seller_proceeds=split.seller_proceeds if split else None,
            platform_fee=split.platform_fee if split else None,
            failure_kind=kind,
            reason=reason,
        )

        def _mutate(updated: AuctionSnapshot) -> None:
            fsm.apply(updated, AuctionEvent.FAIL, now)
            updated.auction.failure_reason = reason
            updated.auction.settlement = outcome

        await self._store.atomic_update_auction(auction_id, snapshot.version, _mutate)
        logger.warning("settlement failed auction=%s kind=%s reason=%s", auction_id, kind.value, reason)
        return outcome

    def _resolve_authorization(self, snapshot: AuctionSnapshot) -> str:
        allowance = snapshot.allowance
        if allowance is None or not allowance.is_active or not allowance.authorization_ref:
            raise DataIntegrityError(f"seller authorization missing for auction {snapshot.auction.id}")
        return allowance.authorization_ref

    def _resolve_winner(self, winning: Bid) -> str:
        if not winning.bidder_account:
            raise DataIntegrityError(f"winning bid {winning.id} has no receiving account")
        return winning.bidder_account

    def _build_request(
        self,
        snapshot: AuctionSnapshot,
        winner_account: str,
        authorization_ref: str,
        split: PayoutSplit,
    ) -> TransferRequest:
        auction = snapshot.auction
        value_legs = [ValueLeg(winner_account, auction.seller_account, split.seller_proceeds)]
        if split.platform_fee > 0:
            value_legs.append(ValueLeg(winner_account, self._platform_account, split.platform_fee))
        return TransferRequest(
            idempotency_token=settlement_token(auction.id),
            asset_leg=AssetLeg(auction.asset_ref, auction.seller_account, winner_account),
            value_legs=tuple(value_legs),
            currency=auction.currency,
            memo=f"Auction Settlement: {auction.id}",
            authorization_ref=authorization_ref,
            metadata={"auction_id": auction.id},
        )

    async def _publish(self, outcome: SettlementOutcome) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher.publish(outcome)
        except Exception:
            logger.warning("failed to publish settlement outcome auction=%s", outcome.auction_id, exc_info=True)


def recorded_outcome(snapshot: AuctionSnapshot) -> SettlementOutcome:
    """Outcome already stored on a settled or terminal auction."""
    auction = snapshot.auction
    if auction.settlement is not None:
        return auction.settlement
    status = {
        AuctionStatus.ENDED: OutcomeStatus.ENDED if auction.winner_account else OutcomeStatus.ENDED_NO_WINNER,
        AuctionStatus.FAILED: OutcomeStatus.FAILED,
        AuctionStatus.CANCELLED: OutcomeStatus.CANCELLED,
    }.get(auction.status, OutcomeStatus.ENDED)
    return SettlementOutcome(
        auction_id=auction.id,
        status=status,
        settled_at=auction.updated_at or auction.end_time,
        winner_account=auction.winner_account,
        final_bid=auction.current_highest_bid if auction.winner_account else None,
        reason=auction.failure_reason,
    )
