"""Transfer ledger clients executing multi-leg atomic transfers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

import httpx

from ..auction.models import AssetRef
from ..config import ServerConfig
from ..errors import TransferError, TransferTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetLeg:
    asset: AssetRef
    from_account: str
    to_account: str


@dataclass(frozen=True)
class ValueLeg:
    from_account: str
    to_account: str
    amount: Decimal


@dataclass(frozen=True)
class TransferRequest:
    idempotency_token: str
    asset_leg: AssetLeg
    value_legs: tuple[ValueLeg, ...]
    currency: str
    memo: str = ""
    authorization_ref: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "idempotency_token": self.idempotency_token,
            "memo": self.memo,
            "currency": self.currency,
            "authorization_ref": self.authorization_ref,
            "asset_leg": {
                "collection_id": self.asset_leg.asset.collection_id,
                "serial_number": self.asset_leg.asset.serial_number,
                "from": self.asset_leg.from_account,
                "to": self.asset_leg.to_account,
            },
            "value_legs": [
                {"from": leg.from_account, "to": leg.to_account, "amount": str(leg.amount)}
                for leg in self.value_legs
            ],
            "metadata": dict(self.metadata),
        }


class TransferLedger(Protocol):
    async def execute_atomic_transfer(self, request: TransferRequest) -> str:
        """Commit every leg or none; return the ledger transfer id."""
        ...

    async def close(self) -> None: ...


class InMemoryTransferLedger:
    """Local ledger that commits transfers in process.

    Repeated requests with the same idempotency token return the original
    transfer id without executing again.
    """

    def __init__(self) -> None:
        self._by_token: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def execute_atomic_transfer(self, request: TransferRequest) -> str:
        if not request.value_legs:
            raise TransferError("transfer requires at least one value leg")
        async with self._lock:
            existing = self._by_token.get(request.idempotency_token)
            if existing:
                return existing
            transfer_id = f"tx_{uuid.uuid4().hex}"
            self._by_token[request.idempotency_token] = transfer_id
        logger.info(
            "[local-ledger] transfer=%s asset=%s %s->%s legs=%d",
            transfer_id,
            request.asset_leg.asset,
            request.asset_leg.from_account,
            request.asset_leg.to_account,
            len(request.value_legs),
        )
        return transfer_id

    async def close(self) -> None:
        return None


class HttpTransferLedger:
    """Client for an external settlement gateway speaking JSON over HTTP."""

    def __init__(
        self,
        *,
        endpoint: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not endpoint:
            raise ValueError("http ledger requires endpoint")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._endpoint = endpoint
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout_seconds, transport=transport)

    async def execute_atomic_transfer(self, request: TransferRequest) -> str:
        try:
            response = await self._client.post(
                self._endpoint,
                json=request.to_payload(),
                headers={"Idempotency-Key": request.idempotency_token},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            raise TransferTimeout(f"ledger timed out: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise TransferError(
                f"ledger rejected transfer with status {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TransferError(f"ledger unreachable: {exc}") from exc
        if not isinstance(data, dict):
            raise TransferError(f"ledger returned an unexpected payload: {str(data)[:200]}")
        status = str(data.get("status", "SUCCESS")).upper()
        if status != "SUCCESS":
            raise TransferError(f"transfer failed with status {status}")
        transfer_id = data.get("transfer_id") or data.get("transaction_id")
        if not transfer_id:
            raise TransferError("ledger response missing transfer_id")
        return str(transfer_id)

    async def close(self) -> None:
        await self._client.aclose()


def build_transfer_ledger(config: ServerConfig) -> TransferLedger:
    backend = config.ledger.backend
    options = dict(config.ledger.options)
    if backend == "in_memory":
        return InMemoryTransferLedger()
    if backend == "http":
        options.setdefault("timeout_seconds", config.settlement.transfer_timeout_seconds)
        return HttpTransferLedger(**options)
    raise ValueError(f"unknown ledger backend {backend}")
