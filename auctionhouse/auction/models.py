"""Auction, bid, asset, and allowance records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from ..transport.timestamps import format_timestamp, parse_optional, parse_timestamp


class AuctionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({AuctionStatus.ENDED, AuctionStatus.FAILED, AuctionStatus.CANCELLED})
OPEN_STATUSES = frozenset({AuctionStatus.PENDING, AuctionStatus.ACTIVE})


class AssetStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    LISTED = "LISTED"
    IN_AUCTION = "IN_AUCTION"
    SOLD = "SOLD"


class OutcomeStatus(str, Enum):
    ENDED = "ended"
    SOLD = "sold"
    ENDED_NO_WINNER = "ended_no_winner"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    LEDGER = "ledger"
    DATA_INTEGRITY = "data_integrity"


def new_auction_id() -> str:
    return f"auc_{uuid.uuid4().hex}"


def new_bid_id() -> str:
    return f"bid_{uuid.uuid4().hex}"


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _text(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


@dataclass(frozen=True)
class AssetRef:
    collection_id: str
    serial_number: int

    def __str__(self) -> str:
        return f"{self.collection_id}#{self.serial_number}"

    def to_dict(self) -> dict[str, Any]:
        return {"collection_id": self.collection_id, "serial_number": self.serial_number}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AssetRef":
        return cls(collection_id=str(data["collection_id"]), serial_number=int(data["serial_number"]))


@dataclass
class Asset:
    ref: AssetRef
    owner_account: str
    status: AssetStatus = AssetStatus.AVAILABLE
    auction_id: str | None = None
    listing_id: str | None = None
    last_sale_price: Decimal | None = None

    @property
    def is_attached(self) -> bool:
        return bool(self.auction_id or self.listing_id)

    def release(self) -> None:
        self.status = AssetStatus.AVAILABLE
        self.auction_id = None
        self.listing_id = None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.ref.to_dict(),
            "owner_account": self.owner_account,
            "status": self.status.value,
            "auction_id": self.auction_id,
            "listing_id": self.listing_id,
            "last_sale_price": _text(self.last_sale_price),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Asset":
        return cls(
            ref=AssetRef.from_dict(data),
            owner_account=data["owner_account"],
            status=AssetStatus(data.get("status", AssetStatus.AVAILABLE.value)),
            auction_id=data.get("auction_id"),
            listing_id=data.get("listing_id"),
            last_sale_price=_decimal(data.get("last_sale_price")),
        )


@dataclass
class Bid:
    id: str
    auction_id: str
    bidder_account: str
    amount: Decimal
    created_at: datetime
    winning: bool = False
    settlement_tx_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "auction_id": self.auction_id,
            "bidder_account": self.bidder_account,
            "amount": str(self.amount),
            "created_at": format_timestamp(self.created_at),
            "winning": self.winning,
            "settlement_tx_id": self.settlement_tx_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Bid":
        return cls(
            id=data["id"],
            auction_id=data["auction_id"],
            bidder_account=data["bidder_account"],
            amount=Decimal(data["amount"]),
            created_at=parse_timestamp(data["created_at"]),
            winning=bool(data.get("winning", False)),
            settlement_tx_id=data.get("settlement_tx_id"),
        )


@dataclass
class AllowanceGrant:
    target_id: str
    holder_account: str
    authorization_ref: str | None = None
    granted: bool = False
    revoked: bool = False
    granted_at: datetime | None = None
    revoked_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.granted and not self.revoked

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "holder_account": self.holder_account,
            "authorization_ref": self.authorization_ref,
            "granted": self.granted,
            "revoked": self.revoked,
            "granted_at": format_timestamp(self.granted_at),
            "revoked_at": format_timestamp(self.revoked_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AllowanceGrant":
        return cls(
            target_id=data["target_id"],
            holder_account=data["holder_account"],
            authorization_ref=data.get("authorization_ref"),
            granted=bool(data.get("granted", False)),
            revoked=bool(data.get("revoked", False)),
            granted_at=parse_optional(data.get("granted_at")),
            revoked_at=parse_optional(data.get("revoked_at")),
        )


@dataclass
class SettlementOutcome:
    auction_id: str
    status: OutcomeStatus
    settled_at: datetime
    winner_account: str | None = None
    final_bid: Decimal | None = None
    seller_proceeds: Decimal | None = None
    platform_fee: Decimal | None = None
    transfer_id: str | None = None
    failure_kind: FailureKind | None = None
    reason: str | None = None

    @property
    def success(self) -> bool:
        return self.status in (OutcomeStatus.ENDED, OutcomeStatus.ENDED_NO_WINNER)

    def message_attributes(self) -> dict[str, str]:
        return {"event": "auction_settlement", "auction_id": self.auction_id, "status": self.status.value}

    def to_dict(self) -> dict[str, Any]:
        return {
            "auction_id": self.auction_id,
            "status": self.status.value,
            "settled_at": format_timestamp(self.settled_at),
            "winner_account": self.winner_account,
            "final_bid": _text(self.final_bid),
            "seller_proceeds": _text(self.seller_proceeds),
            "platform_fee": _text(self.platform_fee),
            "transfer_id": self.transfer_id,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SettlementOutcome":
        failure_kind = data.get("failure_kind")
        return cls(
            auction_id=data["auction_id"],
            status=OutcomeStatus(data["status"]),
            settled_at=parse_timestamp(data["settled_at"]),
            winner_account=data.get("winner_account"),
            final_bid=_decimal(data.get("final_bid")),
            seller_proceeds=_decimal(data.get("seller_proceeds")),
            platform_fee=_decimal(data.get("platform_fee")),
            transfer_id=data.get("transfer_id"),
            failure_kind=FailureKind(failure_kind) if failure_kind else None,
            reason=data.get("reason"),
        )


@dataclass
class Auction:
    id: str
    seller_account: str
    asset_ref: AssetRef
    reserve_price: Decimal
    start_time: datetime
    end_time: datetime
    created_at: datetime
    title: str = ""
    description: str = ""
    currency: str = "HBAR"
    status: AuctionStatus = AuctionStatus.PENDING
    current_highest_bid: Decimal | None = None
    settled: bool = False
    winner_account: str | None = None
    allowance_granted: bool = False
    bid_count: int = 0
    version: int = 0
    settlement: SettlementOutcome | None = None
    failure_reason: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "seller_account": self.seller_account,
            "asset": self.asset_ref.to_dict(),
            "reserve_price": str(self.reserve_price),
            "start_time": format_timestamp(self.start_time),
            "end_time": format_timestamp(self.end_time),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "title": self.title,
            "description": self.description,
            "currency": self.currency,
            "status": self.status.value,
            "current_highest_bid": _text(self.current_highest_bid),
            "settled": self.settled,
            "winner_account": self.winner_account,
            "allowance_granted": self.allowance_granted,
            "bid_count": self.bid_count,
            "version": self.version,
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Auction":
        settlement = data.get("settlement")
        return cls(
            id=data["id"],
            seller_account=data["seller_account"],
            asset_ref=AssetRef.from_dict(data["asset"]),
            reserve_price=Decimal(data["reserve_price"]),
            start_time=parse_timestamp(data["start_time"]),
            end_time=parse_timestamp(data["end_time"]),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_optional(data.get("updated_at")),
            title=data.get("title", ""),
            description=data.get("description", ""),
            currency=data.get("currency", "HBAR"),
            status=AuctionStatus(data["status"]),
            current_highest_bid=_decimal(data.get("current_highest_bid")),
            settled=bool(data.get("settled", False)),
            winner_account=data.get("winner_account"),
            allowance_granted=bool(data.get("allowance_granted", False)),
            bid_count=int(data.get("bid_count", 0)),
            version=int(data.get("version", 0)),
            settlement=SettlementOutcome.from_dict(settlement) if settlement else None,
            failure_reason=data.get("failure_reason"),
        )


@dataclass
class AuctionSnapshot:
    """Everything a single atomic auction write may touch."""

    auction: Auction
    bids: list[Bid] = field(default_factory=list)
    asset: Asset | None = None
    allowance: AllowanceGrant | None = None

    @property
    def version(self) -> int:
        return self.auction.version

    @property
    def record(self) -> Auction:
        return self.auction

    def winning_bid(self) -> Bid | None:
        return next((bid for bid in self.bids if bid.winning), None)

    def copy(self) -> "AuctionSnapshot":
        return AuctionSnapshot.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "auction": self.auction.to_dict(),
            "bids": [bid.to_dict() for bid in self.bids],
            "asset": self.asset.to_dict() if self.asset else None,
            "allowance": self.allowance.to_dict() if self.allowance else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuctionSnapshot":
        asset = data.get("asset")
        allowance = data.get("allowance")
        return cls(
            auction=Auction.from_dict(data["auction"]),
            bids=[Bid.from_dict(item) for item in data.get("bids") or []],
            asset=Asset.from_dict(asset) if asset else None,
            allowance=AllowanceGrant.from_dict(allowance) if allowance else None,
        )


def public_view(snapshot: AuctionSnapshot) -> dict[str, Any]:
    """Payload returned to API callers for an auction and its bids."""
    auction = snapshot.auction.to_dict()
    auction["bids"] = [
        bid.to_dict() for bid in sorted(snapshot.bids, key=lambda item: item.created_at, reverse=True)
    ]
    auction["asset_status"] = snapshot.asset.status.value if snapshot.asset else None
    auction["allowance"] = (
        {k: v for k, v in snapshot.allowance.to_dict().items() if k != "authorization_ref"}
        if snapshot.allowance
        else None
    )
    return auction


__all__ = [
    "AllowanceGrant",
    "Asset",
    "AssetRef",
    "AssetStatus",
    "Auction",
    "AuctionSnapshot",
    "AuctionStatus",
    "Bid",
    "FailureKind",
    "OPEN_STATUSES",
    "OutcomeStatus",
    "SettlementOutcome",
    "TERMINAL_STATUSES",
    "new_auction_id",
    "new_bid_id",
    "public_view",
]
