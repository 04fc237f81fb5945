from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from jsonschema import ValidationError

from . import __version__
from .admin import config as admin_config
from .admin import health as admin_health
from .admin import stats as admin_stats
from .admin.stats import AuctionStatsService
from .auction.allowance import AllowanceCoordinator
from .auction.bidding import BidAdmission
from .auction.lifecycle import AuctionLifecycle
from .auction.models import AssetRef, AuctionStatus, public_view
from .config import ServerConfig, get_server_config
from .errors import AuctionRejected, ConcurrencyConflict, InvalidTransition, RejectionReason
from .events.publisher import SettlementPublisher
from .ledger.settlement import SettlementOrchestrator
from .ledger.transfer import build_transfer_ledger
from .marketplace.listings import ListingService
from .marketplace.models import ListingSnapshot, ListingStatus, listing_view
from .marketplace.purchase import PurchaseOrchestrator
from .scheduler.completion import CompletionScheduler
from .storage import build_storage
from .transport.timestamps import parse_timestamp
from .validation.validator import SchemaRegistry, get_schema_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    logging.basicConfig(level=server_config.log_level)
    schema_registry = get_schema_registry()
    storage = build_storage(server_config)
    ledger = build_transfer_ledger(server_config)
    publisher = SettlementPublisher(server_config.events.backend, server_config.events.options)
    lifecycle = AuctionLifecycle(storage, default_currency=server_config.auction.default_currency)
    bidding = BidAdmission(storage, server_config.auction)
    allowance = AllowanceCoordinator(storage)
    listings = ListingService(storage, default_currency=server_config.auction.default_currency)
    orchestrator = SettlementOrchestrator(
        storage,
        ledger,
        server_config.settlement,
        server_config.ledger.platform_account,
        publisher=publisher,
    )
    purchases = PurchaseOrchestrator(
        storage,
        ledger,
        server_config.settlement,
        server_config.ledger.platform_account,
        publisher=publisher,
    )
    scheduler = CompletionScheduler(
        storage,
        orchestrator,
        lifecycle,
        interval_seconds=server_config.scheduler.interval_seconds,
    )
    stats = AuctionStatsService(storage, server_config.scheduler.ending_soon_seconds)

    app.state.server_config = server_config
    app.state.schema_registry = schema_registry
    app.state.storage = storage
    app.state.ledger = ledger
    app.state.publisher = publisher
    app.state.lifecycle = lifecycle
    app.state.bidding = bidding
    app.state.allowance = allowance
    app.state.listings = listings
    app.state.purchases = purchases
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler
    app.state.stats = stats
    app.state.start_time = datetime.now(timezone.utc)

    if server_config.scheduler.enabled:
        await scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        await ledger.close()
        await storage.close()


app = FastAPI(
    title="Auction House Server",
    version=__version__,
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_stats.router)
app.include_router(admin_config.router)


# Error mapping --------------------------------------------------------------

_REJECTION_STATUS = {
    RejectionReason.AUCTION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RejectionReason.LISTING_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RejectionReason.NOT_ASSET_HOLDER: status.HTTP_403_FORBIDDEN,
    RejectionReason.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
}


@app.exception_handler(AuctionRejected)
async def handle_rejection(request: Request, exc: AuctionRejected) -> JSONResponse:
    code = _REJECTION_STATUS.get(exc.reason, status.HTTP_422_UNPROCESSABLE_ENTITY)
    return JSONResponse(status_code=code, content=exc.to_payload())


@app.exception_handler(ConcurrencyConflict)
async def handle_conflict(request: Request, exc: ConcurrencyConflict) -> JSONResponse:
    logger.warning("concurrency conflict on %s: %s", exc.auction_id, exc)
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=exc.to_payload())


@app.exception_handler(InvalidTransition)
async def handle_invalid_transition(request: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "success": False,
            "reason": RejectionReason.INVALID_TRANSITION.value,
            "error": str(exc),
            "retryable": False,
        },
    )


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_lifecycle(request: Request) -> AuctionLifecycle:
    return request.app.state.lifecycle


def get_bidding(request: Request) -> BidAdmission:
    return request.app.state.bidding


def get_allowance(request: Request) -> AllowanceCoordinator:
    return request.app.state.allowance


def get_orchestrator(request: Request) -> SettlementOrchestrator:
    return request.app.state.orchestrator


def get_listings(request: Request) -> ListingService:
    return request.app.state.listings


def get_purchases(request: Request) -> PurchaseOrchestrator:
    return request.app.state.purchases


def _allowance_view(snapshot: Any) -> dict[str, Any]:
    if isinstance(snapshot, ListingSnapshot):
        return {"success": True, "listing": listing_view(snapshot)}
    return {"success": True, "auction": public_view(snapshot)}


def _validate(schemas: SchemaRegistry, name: str, payload: dict[str, Any]) -> None:
    try:
        schemas.validate(name, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "auctionhouse",
        "version": app.version,
        "store_backend": settings.store.backend,
        "ledger_backend": settings.ledger.backend,
    }


@app.post("/auctions", tags=["auctions"], status_code=status.HTTP_201_CREATED)
async def create_auction(
    payload: dict[str, Any] = Body(...),
    lifecycle: AuctionLifecycle = Depends(get_lifecycle),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    _validate(schemas, "create_auction", payload)
    try:
        start_time = parse_timestamp(payload["start_time"])
        end_time = parse_timestamp(payload["end_time"])
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    snapshot = await lifecycle.create_auction(
        seller_account=payload["seller_account"],
        asset_ref=AssetRef.from_dict(payload["asset"]),
        reserve_price=payload["reserve_price"],
        start_time=start_time,
        end_time=end_time,
        title=payload.get("title", ""),
        description=payload.get("description", ""),
        currency=payload.get("currency"),
    )
    return {"success": True, "auction": public_view(snapshot)}


@app.get("/auctions", tags=["auctions"])
async def list_auctions(
    status_filter: str | None = Query(None, alias="status"),
    lifecycle: AuctionLifecycle = Depends(get_lifecycle),
) -> dict[str, Any]:
    try:
        wanted = AuctionStatus(status_filter.upper()) if status_filter else None
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"unknown status {status_filter}") from exc
    auctions = await lifecycle.list_auctions(wanted)
    return {"success": True, "auctions": [auction.to_dict() for auction in auctions]}


@app.get("/auctions/{auction_id}", tags=["auctions"])
async def get_auction(
    auction_id: str,
    lifecycle: AuctionLifecycle = Depends(get_lifecycle),
) -> dict[str, Any]:
    snapshot = await lifecycle.get_auction(auction_id)
    return {"success": True, "auction": public_view(snapshot)}


@app.post("/auctions/{auction_id}/bids", tags=["auctions"], status_code=status.HTTP_201_CREATED)
async def place_bid(
    auction_id: str,
    payload: dict[str, Any] = Body(...),
    bidding: BidAdmission = Depends(get_bidding),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    _validate(schemas, "place_bid", payload)
    bid = await bidding.place_bid(auction_id, payload["bidder_account"], payload["amount"])
    return {"success": True, "bid": bid.to_dict()}


@app.post("/auctions/{auction_id}/settle", tags=["settlement"])
async def settle_auction(
    auction_id: str,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    outcome = await orchestrator.settle(auction_id)
    return {"success": outcome.success, "outcome": outcome.to_dict()}


@app.post("/auctions/{auction_id}/cancel", tags=["auctions"])
async def cancel_auction(
    auction_id: str,
    payload: dict[str, Any] = Body(...),
    lifecycle: AuctionLifecycle = Depends(get_lifecycle),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    _validate(schemas, "cancel_auction", payload)
    outcome = await lifecycle.cancel(auction_id, payload["requester_account"])
    return {"success": True, "outcome": outcome.to_dict()}


@app.post("/allowance/grant", tags=["allowance"])
async def grant_allowance(
    payload: dict[str, Any] = Body(...),
    allowance: AllowanceCoordinator = Depends(get_allowance),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    _validate(schemas, "allowance_grant", payload)
    snapshot = await allowance.grant(
        AssetRef.from_dict(payload),
        payload["holder_account"],
        payload["authorization_ref"],
    )
    return _allowance_view(snapshot)


@app.post("/allowance/revoke", tags=["allowance"])
async def revoke_allowance(
    payload: dict[str, Any] = Body(...),
    allowance: AllowanceCoordinator = Depends(get_allowance),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    _validate(schemas, "allowance_revoke", payload)
    snapshot = await allowance.revoke(AssetRef.from_dict(payload), payload["holder_account"])
    return _allowance_view(snapshot)


@app.post("/listings", tags=["listings"], status_code=status.HTTP_201_CREATED)
async def create_listing(
    payload: dict[str, Any] = Body(...),
    listings: ListingService = Depends(get_listings),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    _validate(schemas, "create_listing", payload)
    snapshot = await listings.create_listing(
        seller_account=payload["seller_account"],
        asset_ref=AssetRef.from_dict(payload["asset"]),
        price=payload["price"],
        title=payload.get("title", ""),
        currency=payload.get("currency"),
    )
    return {"success": True, "listing": listing_view(snapshot)}


@app.get("/listings", tags=["listings"])
async def list_listings(
    status_filter: str | None = Query(None, alias="status"),
    listings: ListingService = Depends(get_listings),
) -> dict[str, Any]:
    try:
        wanted = ListingStatus(status_filter.upper()) if status_filter else None
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"unknown status {status_filter}") from exc
    found = await listings.list_listings(wanted)
    return {"success": True, "listings": [listing.to_dict() for listing in found]}


@app.get("/listings/{listing_id}", tags=["listings"])
async def get_listing(
    listing_id: str,
    listings: ListingService = Depends(get_listings),
) -> dict[str, Any]:
    snapshot = await listings.get_listing(listing_id)
    return {"success": True, "listing": listing_view(snapshot)}


@app.post("/listings/{listing_id}/purchase", tags=["listings"])
async def purchase_listing(
    listing_id: str,
    payload: dict[str, Any] = Body(...),
    purchases: PurchaseOrchestrator = Depends(get_purchases),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    _validate(schemas, "purchase_listing", payload)
    outcome = await purchases.purchase(listing_id, payload["buyer_account"])
    return {"success": outcome.success, "outcome": outcome.to_dict()}


@app.post("/listings/{listing_id}/remove", tags=["listings"])
async def remove_listing(
    listing_id: str,
    payload: dict[str, Any] = Body(...),
    listings: ListingService = Depends(get_listings),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    _validate(schemas, "remove_listing", payload)
    snapshot = await listings.remove_listing(listing_id, payload["requester_account"])
    return {"success": True, "listing": listing_view(snapshot)}
