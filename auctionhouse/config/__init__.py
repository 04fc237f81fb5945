"""Configuration helpers for the auction server."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"


@dataclass(frozen=True)
class StoreConfig:
    backend: str
    options: Mapping[str, Any]
    lock_timeout_seconds: float


@dataclass(frozen=True)
class LedgerConfig:
    backend: str
    options: Mapping[str, Any]
    platform_account: str


@dataclass(frozen=True)
class AuctionConfig:
    min_increment_ratio: Decimal
    require_opening_increment: bool
    default_currency: str


@dataclass(frozen=True)
class SettlementConfig:
    fee_ratio: Decimal
    transfer_timeout_seconds: float
    amount_precision: int


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool
    interval_seconds: float
    ending_soon_seconds: int


@dataclass(frozen=True)
class EventsConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class ServerConfig:
    listen: Mapping[str, Any]
    store: StoreConfig
    ledger: LedgerConfig
    auction: AuctionConfig
    settlement: SettlementConfig
    scheduler: SchedulerConfig
    events: EventsConfig
    log_level: str


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def get_config_path() -> Path:
    return Path(os.getenv("AUCTIONHOUSE_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))


def parse_server_config(data: Mapping[str, Any]) -> ServerConfig:
    store = data.get("store", {})
    ledger = data.get("ledger", {})
    auction = data.get("auction", {})
    settlement = data.get("settlement", {})
    scheduler = data.get("scheduler", {})
    events = data.get("events", {})
    logging_section = data.get("logging", {})
    return ServerConfig(
        listen=data.get("listen", {}),
        store=StoreConfig(
            backend=str(store.get("backend", "in_memory")),
            options=dict(store.get("options") or {}),
            lock_timeout_seconds=float(store.get("lock_timeout_seconds", 5)),
        ),
        ledger=LedgerConfig(
            backend=str(ledger.get("backend", "in_memory")),
            options=dict(ledger.get("options") or {}),
            platform_account=str(ledger.get("platform_account", "platform")),
        ),
        auction=AuctionConfig(
            min_increment_ratio=Decimal(str(auction.get("min_increment_ratio", "0.05"))),
            require_opening_increment=bool(auction.get("require_opening_increment", True)),
            default_currency=str(auction.get("default_currency", "HBAR")),
        ),
        settlement=SettlementConfig(
            fee_ratio=Decimal(str(settlement.get("fee_ratio", "0.025"))),
            transfer_timeout_seconds=float(settlement.get("transfer_timeout_seconds", 30)),
            amount_precision=int(settlement.get("amount_precision", 8)),
        ),
        scheduler=SchedulerConfig(
            enabled=bool(scheduler.get("enabled", True)),
            interval_seconds=float(scheduler.get("interval_seconds", 60)),
            ending_soon_seconds=int(scheduler.get("ending_soon_seconds", 3600)),
        ),
        events=EventsConfig(
            backend=str(events.get("backend", "local")),
            options=dict(events.get("options") or {}),
        ),
        log_level=str(logging_section.get("level", "INFO")).upper(),
    )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    return parse_server_config(_load_yaml(get_config_path()))
