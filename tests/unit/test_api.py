"""HTTP surface tests driven through the FastAPI app and its lifespan."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from auctionhouse.config import get_server_config
from auctionhouse.main import app
from auctionhouse.transport.timestamps import format_timestamp

SELLER = "0.0.1001"
BIDDER = "0.0.2001"
BUYER = "0.0.3001"


@pytest.fixture
def client(monkeypatch, tmp_path):
    config_path = tmp_path / "server.yaml"
    config_path.write_text(
        "scheduler:\n  enabled: false\n"
        "ledger:\n  backend: in_memory\n  platform_account: '0.0.9999'\n"
        "logging:\n  level: WARNING\n"
    )
    monkeypatch.setenv("AUCTIONHOUSE_CONFIG_PATH", str(config_path))
    get_server_config.cache_clear()
    with TestClient(app) as test_client:
        yield test_client
    get_server_config.cache_clear()


def _create(client, serial=1, starts_in=timedelta(minutes=-1), ends_in=timedelta(hours=1)):
    now = datetime.now(timezone.utc)
    response = client.post(
        "/auctions",
        json={
            "seller_account": SELLER,
            "asset": {"collection_id": "0.0.5005", "serial_number": serial},
            "reserve_price": "100",
            "start_time": format_timestamp(now + starts_in),
            "end_time": format_timestamp(now + ends_in),
            "title": "Bronze head",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["auction"]


def _grant(client, serial=1):
    return client.post(
        "/allowance/grant",
        json={
            "collection_id": "0.0.5005",
            "serial_number": serial,
            "holder_account": SELLER,
            "authorization_ref": "auth-ref-1",
        },
    )


class TestAuctionRoutes:
    def test_create_grant_and_bid(self, client):
        auction = _create(client)
        assert auction["status"] == "PENDING"
        assert auction["asset_status"] == "IN_AUCTION"

        granted = _grant(client)
        assert granted.status_code == 200
        assert granted.json()["auction"]["status"] == "ACTIVE"
        assert "authorization_ref" not in granted.json()["auction"]["allowance"]

        bid = client.post(f"/auctions/{auction['id']}/bids", json={"bidder_account": BIDDER, "amount": "106"})
        assert bid.status_code == 201
        assert bid.json()["bid"]["winning"] is True

        fetched = client.get(f"/auctions/{auction['id']}")
        body = fetched.json()["auction"]
        assert body["current_highest_bid"] == "106"
        assert len(body["bids"]) == 1

    def test_bid_below_minimum_returns_structured_error(self, client):
        auction = _create(client)
        _grant(client)
        response = client.post(f"/auctions/{auction['id']}/bids", json={"bidder_account": BIDDER, "amount": "104"})
        assert response.status_code == 422
        payload = response.json()
        assert payload["success"] is False
        assert payload["reason"] == "below_minimum_bid"
        assert payload["retryable"] is False

    def test_unknown_auction_is_404(self, client):
        response = client.get("/auctions/auc_missing")
        assert response.status_code == 404
        assert response.json()["reason"] == "auction_not_found"

    def test_schema_violation_is_422(self, client):
        response = client.post("/auctions", json={"seller_account": SELLER})
        assert response.status_code == 422

    def test_invalid_schedule(self, client):
        now = datetime.now(timezone.utc)
        response = client.post(
            "/auctions",
            json={
                "seller_account": SELLER,
                "asset": {"collection_id": "0.0.5005", "serial_number": 2},
                "reserve_price": 10,
                "start_time": format_timestamp(now),
                "end_time": format_timestamp(now - timedelta(hours=1)),
            },
        )
        assert response.status_code == 422
        assert response.json()["reason"] == "invalid_schedule"

    def test_settle_before_end_is_rejected(self, client):
        auction = _create(client)
        _grant(client)
        response = client.post(f"/auctions/{auction['id']}/settle")
        assert response.status_code == 422
        assert response.json()["reason"] == "not_yet_due"

    def test_revoke_with_bids_is_rejected(self, client):
        auction = _create(client)
        _grant(client)
        client.post(f"/auctions/{auction['id']}/bids", json={"bidder_account": BIDDER, "amount": "200"})
        response = client.post(
            "/allowance/revoke",
            json={"collection_id": "0.0.5005", "serial_number": 1, "holder_account": SELLER},
        )
        assert response.status_code == 422
        assert response.json()["reason"] == "has_active_bids"

    def test_cancel_requires_seller(self, client):
        auction = _create(client)
        response = client.post(f"/auctions/{auction['id']}/cancel", json={"requester_account": BIDDER})
        assert response.status_code == 403
        ok = client.post(f"/auctions/{auction['id']}/cancel", json={"requester_account": SELLER})
        assert ok.status_code == 200
        assert ok.json()["outcome"]["status"] == "cancelled"

    def test_list_auctions_by_status(self, client):
        _create(client, serial=1)
        _create(client, serial=2)
        _grant(client, serial=1)
        response = client.get("/auctions", params={"status": "active"})
        assert response.status_code == 200
        assert len(response.json()["auctions"]) == 1


def _create_listing(client, serial=10, price="100"):
    response = client.post(
        "/listings",
        json={
            "seller_account": SELLER,
            "asset": {"collection_id": "0.0.5005", "serial_number": serial},
            "price": price,
            "title": "Signed print",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["listing"]


class TestListingRoutes:
    def test_create_grant_and_purchase(self, client):
        listing = _create_listing(client)
        assert listing["status"] == "PENDING"
        assert listing["asset_status"] == "LISTED"

        granted = _grant(client, serial=10)
        assert granted.status_code == 200
        assert granted.json()["listing"]["status"] == "ACTIVE"
        assert "authorization_ref" not in granted.json()["listing"]["allowance"]

        bought = client.post(f"/listings/{listing['id']}/purchase", json={"buyer_account": BUYER})
        assert bought.status_code == 200
        body = bought.json()
        assert body["success"] is True
        assert body["outcome"]["status"] == "sold"
        assert body["outcome"]["platform_fee"] == "2.50000000"

        fetched = client.get(f"/listings/{listing['id']}").json()["listing"]
        assert fetched["status"] == "SOLD"
        assert fetched["buyer_account"] == BUYER
        assert fetched["asset_status"] == "SOLD"

    def test_purchase_pending_listing_is_rejected(self, client):
        listing = _create_listing(client)
        response = client.post(f"/listings/{listing['id']}/purchase", json={"buyer_account": BUYER})
        assert response.status_code == 422
        assert response.json()["reason"] == "listing_not_active"

    def test_unknown_listing_is_404(self, client):
        response = client.get("/listings/lst_missing")
        assert response.status_code == 404
        assert response.json()["reason"] == "listing_not_found"

    def test_remove_and_revoke(self, client):
        first = _create_listing(client, serial=11)
        removed = client.post(f"/listings/{first['id']}/remove", json={"requester_account": SELLER})
        assert removed.status_code == 200
        assert removed.json()["listing"]["status"] == "CANCELLED"

        second = _create_listing(client, serial=12)
        _grant(client, serial=12)
        revoked = client.post(
            "/allowance/revoke",
            json={"collection_id": "0.0.5005", "serial_number": 12, "holder_account": SELLER},
        )
        assert revoked.status_code == 200
        assert revoked.json()["listing"]["id"] == second["id"]
        assert revoked.json()["listing"]["status"] == "CANCELLED"

    def test_list_listings_by_status(self, client):
        _create_listing(client, serial=13)
        _create_listing(client, serial=14)
        _grant(client, serial=14)
        response = client.get("/listings", params={"status": "active"})
        assert response.status_code == 200
        assert len(response.json()["listings"]) == 1
        assert client.get("/listings", params={"status": "bogus"}).status_code == 422

    def test_listing_schema_violation_is_422(self, client):
        response = client.post("/listings", json={"seller_account": SELLER})
        assert response.status_code == 422


class TestAdminRoutes:
    def test_health(self, client):
        response = client.get("/admin/health")
        body = response.json()
        assert body["status"] == "healthy"
        assert body["scheduler_running"] is False

    def test_stats(self, client):
        auction = _create(client)
        _grant(client)
        client.post(f"/auctions/{auction['id']}/bids", json={"bidder_account": BIDDER, "amount": "150"})
        body = client.get("/admin/stats").json()
        assert body["live_auctions"] == 1
        assert body["active_bidders"] == 1
        assert body["total_bids"] == 1
        assert body["ending_soon"] == 1

    def test_config(self, client):
        body = client.get("/admin/config").json()
        assert body["platform_account"] == "0.0.9999"
        assert body["fee_ratio"] == "0.025"
