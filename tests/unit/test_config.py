"""Tests for configuration loading and the settlement publisher."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from auctionhouse.auction.models import OutcomeStatus, SettlementOutcome
from auctionhouse.config import get_config_path, get_server_config, parse_server_config
from auctionhouse.events.publisher import SettlementPublisher
from auctionhouse.storage import InMemoryAuctionStore, build_storage


class TestServerConfig:
    def test_defaults(self):
        config = parse_server_config({})
        assert config.store.backend == "in_memory"
        assert config.auction.min_increment_ratio == Decimal("0.05")
        assert config.auction.require_opening_increment is True
        assert config.settlement.fee_ratio == Decimal("0.025")
        assert config.settlement.amount_precision == 8
        assert config.scheduler.interval_seconds == 60
        assert config.log_level == "INFO"

    def test_bundled_yaml_loads(self, monkeypatch):
        monkeypatch.delenv("AUCTIONHOUSE_CONFIG_PATH", raising=False)
        get_server_config.cache_clear()
        try:
            config = get_server_config()
        finally:
            get_server_config.cache_clear()
        assert config.ledger.platform_account
        assert config.settlement.transfer_timeout_seconds == 30

    def test_path_override(self, monkeypatch, tmp_path):
        path = tmp_path / "server.yaml"
        path.write_text("auction:\n  require_opening_increment: false\nlogging:\n  level: debug\n")
        monkeypatch.setenv("AUCTIONHOUSE_CONFIG_PATH", str(path))
        get_server_config.cache_clear()
        try:
            config = get_server_config()
        finally:
            get_server_config.cache_clear()
        assert get_config_path() == path
        assert config.auction.require_opening_increment is False
        assert config.log_level == "DEBUG"

    def test_build_storage(self):
        store = build_storage(parse_server_config({"store": {"lock_timeout_seconds": 2}}))
        assert isinstance(store, InMemoryAuctionStore)
        with pytest.raises(ValueError):
            build_storage(parse_server_config({"store": {"backend": "firestore"}}))


class TestSettlementPublisher:
    @pytest.mark.asyncio
    async def test_local_backend_logs_outcomes(self, caplog):
        publisher = SettlementPublisher("local")
        outcome = SettlementOutcome(
            auction_id="auc_1",
            status=OutcomeStatus.ENDED_NO_WINNER,
            settled_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        )
        with caplog.at_level(logging.INFO, logger="auctionhouse.events.publisher"):
            await publisher.publish(outcome)
        assert "event=auction_settlement auction_id=auc_1 status=ended_no_winner" in caplog.text

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            SettlementPublisher("carrier-pigeon")
