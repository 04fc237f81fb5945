"""Auction and listing finite state machines."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from ..errors import InvalidTransition, RejectionReason, TransitionRejected
from ..marketplace.models import ListingSnapshot, ListingStatus
from .models import AuctionSnapshot, AuctionStatus


class AuctionEvent(str, Enum):
    ACTIVATE = "activate"
    SETTLE = "settle"
    FAIL = "fail"
    CANCEL = "cancel"


_TRANSITIONS = {
    (AuctionStatus.PENDING, AuctionEvent.ACTIVATE): AuctionStatus.ACTIVE,
    (AuctionStatus.ACTIVE, AuctionEvent.SETTLE): AuctionStatus.ENDED,
    (AuctionStatus.ACTIVE, AuctionEvent.FAIL): AuctionStatus.FAILED,
    (AuctionStatus.PENDING, AuctionEvent.CANCEL): AuctionStatus.CANCELLED,
    (AuctionStatus.ACTIVE, AuctionEvent.CANCEL): AuctionStatus.CANCELLED,
}

_TARGETS = {event: target for (_, event), target in _TRANSITIONS.items()}

_LISTING_TRANSITIONS = {
    (ListingStatus.PENDING, AuctionEvent.ACTIVATE): ListingStatus.ACTIVE,
    (ListingStatus.ACTIVE, AuctionEvent.SETTLE): ListingStatus.SOLD,
    (ListingStatus.ACTIVE, AuctionEvent.FAIL): ListingStatus.FAILED,
    (ListingStatus.PENDING, AuctionEvent.CANCEL): ListingStatus.CANCELLED,
    (ListingStatus.ACTIVE, AuctionEvent.CANCEL): ListingStatus.CANCELLED,
}


@dataclass(frozen=True)
class Transition:
    source: AuctionStatus
    target: AuctionStatus
    changed: bool


def transition(current: AuctionStatus, event: AuctionEvent) -> Transition:
    """Resolve an event against the current status.

    Re-requesting an event whose target is already the current status is a
    no-op so callers can return the recorded outcome instead of repeating
    side effects.
    """
    if _TARGETS.get(event) == current:
        return Transition(current, current, changed=False)
    try:
        target = _TRANSITIONS[(current, event)]
    except KeyError as exc:
        raise InvalidTransition(f"invalid transition from {current.value} via {event.value}") from exc
    return Transition(current, target, changed=True)


def check_guard(snapshot: AuctionSnapshot, event: AuctionEvent, now: datetime) -> None:
    """Raise TransitionRejected when the guard for ``event`` is not satisfied."""
    auction = snapshot.auction
    if event is AuctionEvent.ACTIVATE:
        allowance = snapshot.allowance
        if allowance is None or not allowance.is_active:
            raise TransitionRejected(
                RejectionReason.ALLOWANCE_NOT_GRANTED,
                f"auction {auction.id} has no active allowance grant",
            )
        if now < auction.start_time:
            raise TransitionRejected(
                RejectionReason.BIDDING_NOT_OPEN,
                f"auction {auction.id} starts at {auction.start_time.isoformat()}",
            )
    elif event in (AuctionEvent.SETTLE, AuctionEvent.FAIL):
        if now < auction.end_time:
            raise TransitionRejected(
                RejectionReason.NOT_YET_DUE,
                f"auction {auction.id} ends at {auction.end_time.isoformat()}",
            )
    elif event is AuctionEvent.CANCEL:
        if auction.bid_count > 0 or snapshot.bids:
            raise TransitionRejected(
                RejectionReason.HAS_ACTIVE_BIDS,
                "cannot cancel auction with existing bids",
            )


def apply(snapshot: AuctionSnapshot, event: AuctionEvent, now: datetime) -> Transition:
    """Check the guard and move ``snapshot.auction`` to the event's target status."""
    result = transition(snapshot.auction.status, event)
    if not result.changed:
        return result
    check_guard(snapshot, event, now)
    snapshot.auction.status = result.target
    snapshot.auction.updated_at = now
    return result


def apply_listing(snapshot: ListingSnapshot, event: AuctionEvent, now: datetime) -> ListingStatus:
    """Move ``snapshot.listing`` along the listing lifecycle.

    Activation requires an active allowance grant; the other edges have no guard.
    """
    listing = snapshot.listing
    try:
        target = _LISTING_TRANSITIONS[(listing.status, event)]
    except KeyError as exc:
        raise InvalidTransition(f"invalid listing transition from {listing.status.value} via {event.value}") from exc
    if event is AuctionEvent.ACTIVATE and (snapshot.allowance is None or not snapshot.allowance.is_active):
        raise TransitionRejected(
            RejectionReason.ALLOWANCE_NOT_GRANTED,
            f"listing {listing.id} has no active allowance grant",
        )
    listing.status = target
    listing.updated_at = now
    return target
