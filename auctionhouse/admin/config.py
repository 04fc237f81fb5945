"""Expose currently loaded server config for debugging."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..config import ServerConfig

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


@router.get("/config")
async def config(request: Request, config: ServerConfig = Depends(_get_config)) -> dict:
    return {
        "version": request.app.version,
        "storage_backend": config.store.backend,
        "ledger_backend": config.ledger.backend,
        "events_backend": config.events.backend,
        "platform_account": config.ledger.platform_account,
        "min_increment_ratio": str(config.auction.min_increment_ratio),
        "require_opening_increment": config.auction.require_opening_increment,
        "default_currency": config.auction.default_currency,
        "fee_ratio": str(config.settlement.fee_ratio),
        "transfer_timeout_seconds": config.settlement.transfer_timeout_seconds,
        "scheduler": {
            "enabled": config.scheduler.enabled,
            "interval_seconds": config.scheduler.interval_seconds,
        },
    }
