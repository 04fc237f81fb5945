"""Fixed-price listing records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from ..auction.models import AllowanceGrant, Asset, AssetRef, FailureKind, OutcomeStatus
from ..transport.timestamps import format_timestamp, parse_optional, parse_timestamp


class ListingStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SOLD = "SOLD"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self not in LISTING_OPEN_STATUSES


LISTING_OPEN_STATUSES = frozenset({ListingStatus.PENDING, ListingStatus.ACTIVE})


def new_listing_id() -> str:
    return f"lst_{uuid.uuid4().hex}"


def _decimal(value: Any) -> Decimal | None:
    return None if value is None else Decimal(str(value))


def _text(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


@dataclass
class PurchaseOutcome:
    listing_id: str
    status: OutcomeStatus
    completed_at: datetime
    buyer_account: str | None = None
    price: Decimal | None = None
    seller_proceeds: Decimal | None = None
    platform_fee: Decimal | None = None
    transfer_id: str | None = None
    failure_kind: FailureKind | None = None
    reason: str | None = None

    @property
    def success(self) -> bool:
        return self.status is OutcomeStatus.SOLD

    def message_attributes(self) -> dict[str, str]:
        return {"event": "listing_purchase", "listing_id": self.listing_id, "status": self.status.value}

    def to_dict(self) -> dict[str, Any]:
        return {
            "listing_id": self.listing_id,
            "status": self.status.value,
            "completed_at": format_timestamp(self.completed_at),
            "buyer_account": self.buyer_account,
            "price": _text(self.price),
            "seller_proceeds": _text(self.seller_proceeds),
            "platform_fee": _text(self.platform_fee),
            "transfer_id": self.transfer_id,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PurchaseOutcome":
        failure_kind = data.get("failure_kind")
        return cls(
            listing_id=data["listing_id"],
            status=OutcomeStatus(data["status"]),
            completed_at=parse_timestamp(data["completed_at"]),
            buyer_account=data.get("buyer_account"),
            price=_decimal(data.get("price")),
            seller_proceeds=_decimal(data.get("seller_proceeds")),
            platform_fee=_decimal(data.get("platform_fee")),
            transfer_id=data.get("transfer_id"),
            failure_kind=FailureKind(failure_kind) if failure_kind else None,
            reason=data.get("reason"),
        )


@dataclass
class Listing:
    id: str
    seller_account: str
    asset_ref: AssetRef
    price: Decimal
    created_at: datetime
    title: str = ""
    currency: str = "HBAR"
    status: ListingStatus = ListingStatus.PENDING
    allowance_granted: bool = False
    buyer_account: str | None = None
    version: int = 0
    purchase: PurchaseOutcome | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "seller_account": self.seller_account,
            "asset": self.asset_ref.to_dict(),
            "price": str(self.price),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "title": self.title,
            "currency": self.currency,
            "status": self.status.value,
            "allowance_granted": self.allowance_granted,
            "buyer_account": self.buyer_account,
            "version": self.version,
            "purchase": self.purchase.to_dict() if self.purchase else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Listing":
        purchase = data.get("purchase")
        return cls(
            id=data["id"],
            seller_account=data["seller_account"],
            asset_ref=AssetRef.from_dict(data["asset"]),
            price=Decimal(data["price"]),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_optional(data.get("updated_at")),
            title=data.get("title", ""),
            currency=data.get("currency", "HBAR"),
            status=ListingStatus(data["status"]),
            allowance_granted=bool(data.get("allowance_granted", False)),
            buyer_account=data.get("buyer_account"),
            version=int(data.get("version", 0)),
            purchase=PurchaseOutcome.from_dict(purchase) if purchase else None,
        )


@dataclass
class ListingSnapshot:
    """A listing with the asset and allowance written alongside it."""

    listing: Listing
    asset: Asset | None = None
    allowance: AllowanceGrant | None = None

    @property
    def version(self) -> int:
        return self.listing.version

    @property
    def record(self) -> Listing:
        return self.listing

    def copy(self) -> "ListingSnapshot":
        return ListingSnapshot.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "listing": self.listing.to_dict(),
            "asset": self.asset.to_dict() if self.asset else None,
            "allowance": self.allowance.to_dict() if self.allowance else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ListingSnapshot":
        asset = data.get("asset")
        allowance = data.get("allowance")
        return cls(
            listing=Listing.from_dict(data["listing"]),
            asset=Asset.from_dict(asset) if asset else None,
            allowance=AllowanceGrant.from_dict(allowance) if allowance else None,
        )


def listing_view(snapshot: ListingSnapshot) -> dict[str, Any]:
    listing = snapshot.listing.to_dict()
    listing["asset_status"] = snapshot.asset.status.value if snapshot.asset else None
    listing["allowance"] = (
        {k: v for k, v in snapshot.allowance.to_dict().items() if k != "authorization_ref"}
        if snapshot.allowance
        else None
    )
    return listing
