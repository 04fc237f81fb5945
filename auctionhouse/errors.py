"""Error taxonomy shared by the auction services."""

from __future__ import annotations

from enum import Enum
from typing import Any


class RejectionReason(str, Enum):
    AUCTION_NOT_FOUND = "auction_not_found"
    AUCTION_NOT_ACTIVE = "auction_not_active"
    BIDDING_NOT_OPEN = "bidding_not_open"
    BIDDING_CLOSED = "bidding_closed"
    SELF_BID = "self_bid"
    INVALID_AMOUNT = "invalid_amount"
    BELOW_MINIMUM_BID = "below_minimum_bid"
    NOT_YET_DUE = "not_yet_due"
    HAS_ACTIVE_BIDS = "has_active_bids"
    NOT_ASSET_HOLDER = "not_asset_holder"
    MISSING_AUTHORIZATION = "missing_authorization"
    ALLOWANCE_NOT_GRANTED = "allowance_not_granted"
    ASSET_UNAVAILABLE = "asset_unavailable"
    INVALID_SCHEDULE = "invalid_schedule"
    INVALID_TRANSITION = "invalid_transition"
    LISTING_NOT_FOUND = "listing_not_found"
    LISTING_NOT_ACTIVE = "listing_not_active"
    SELF_PURCHASE = "self_purchase"


class AuctionRejected(ValueError):
    """Raised when a request is invalid against the current auction state.

    Rejections are reported synchronously and never persist anything.
    """

    retryable = False

    def __init__(self, reason: RejectionReason, message: str | None = None, **details: Any) -> None:
        self.reason = reason
        self.details = details
        super().__init__(message or reason.value.replace("_", " "))

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "reason": self.reason.value,
            "error": str(self),
            "retryable": self.retryable,
        }
        payload.update({key: str(value) for key, value in self.details.items()})
        return payload


class BidRejected(AuctionRejected):
    """Raised by bid admission."""


class AllowanceRejected(AuctionRejected):
    """Raised by the allowance coordinator."""


class ListingRejected(AuctionRejected):
    """Raised by listing management and purchases."""


class SettlementRejected(AuctionRejected):
    """Raised when a settlement request cannot run yet."""


class TransitionRejected(AuctionRejected):
    """Raised when a state machine guard is not satisfied."""


class InvalidTransition(ValueError):
    """Raised for an edge that does not exist in the auction state machine."""


class ConcurrencyConflict(RuntimeError):
    """Raised when a compare-and-swap is lost or an auction lock times out.

    The caller may re-issue the same logical request.
    """

    retryable = True

    def __init__(self, auction_id: str, message: str | None = None) -> None:
        self.auction_id = auction_id
        super().__init__(message or f"concurrent update on {auction_id}")

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": False,
            "reason": "concurrency_conflict",
            "error": str(self),
            "retryable": True,
        }


class TransferError(RuntimeError):
    """Raised when the transfer ledger rejects or cannot execute a transfer."""


class TransferTimeout(TransferError):
    """Raised when the transfer ledger does not answer in time.

    The outcome of the transfer is unknown and must be reconciled out of band.
    """


class DataIntegrityError(ValueError):
    """Raised when settlement inputs (seller authorization, winner account) are missing."""
