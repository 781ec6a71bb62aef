"""Unit tests for the auction HTTP surface."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from auction_server.auction.models import Bid, BidOutcome, RejectReason
from auction_server.bidding.coordinator import BidDecision
from auction_server.bidding.fsm import AdmissionState
from auction_server.main import app, get_coordinator


@pytest.fixture
def client():
    with TestClient(app) as client:
        yield client


def _create_user(client: TestClient, name: str, balance: float) -> int:
    response = client.post(
        "/users", json={"name": name, "email": f"{name}@example.com", "balance": balance}
    )
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def market(client):
    """Seller, two bidders and one open auction starting at 100."""
    seller = _create_user(client, "seller", 0)
    rich = _create_user(client, "rich", 150)
    poor = _create_user(client, "poor", 50)
    response = client.post(
        "/auctions",
        json={"item": "Camera", "seller_id": seller, "duration": 1, "start_bid": 100},
    )
    assert response.status_code == 201
    return {"auction": response.json()["id"], "rich": rich, "poor": poor}


class TestAuctionEndpoints:
    def test_create_auction(self, client):
        seller = _create_user(client, "seller", 0)
        response = client.post(
            "/auctions",
            json={"item": "Lamp", "seller_id": seller, "duration": 2, "start_bid": 10, "buy_now": 50},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["current_bid"] == 10.0
        assert body["buy_now"] == 50.0
        assert body["version"] == 0

    def test_unknown_seller(self, client):
        response = client.post(
            "/auctions",
            json={"item": "Lamp", "seller_id": 99, "duration": 2, "start_bid": 10},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Seller not found"

    def test_invalid_auction_payload(self, client):
        response = client.post("/auctions", json={"item": "Lamp", "seller_id": 1})
        assert response.status_code == 400

    @pytest.mark.parametrize(
        "field,literal",
        [("duration", "Infinity"), ("duration", "NaN"), ("duration", "1e300"), ("start_bid", "NaN")],
    )
    def test_non_finite_auction_numbers(self, client, field, literal):
        seller = _create_user(client, "seller", 0)
        fields = {"duration": "1", "start_bid": "10"}
        fields[field] = literal
        body = (
            f'{{"item": "Lamp", "seller_id": {seller}, '
            f'"duration": {fields["duration"]}, "start_bid": {fields["start_bid"]}}}'
        )
        response = client.post(
            "/auctions", content=body.encode(), headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert client.get("/auctions/all").json() == []

    def test_listing_and_lookup(self, client, market):
        auction_id = market["auction"]
        assert [auction["id"] for auction in client.get("/auctions/all").json()] == [auction_id]
        assert [auction["id"] for auction in client.get("/auctions/list").json()] == [auction_id]
        assert client.get(f"/auctions/{auction_id}").json()["item"] == "Camera"
        assert client.get("/auctions/99").status_code == 404
        assert client.get("/auctions/99/bids").status_code == 404


class TestBidEndpoint:
    """Test POST /auctions/bid against the in-process balance authority."""

    def test_bid_flow(self, client, market):
        auction_id = market["auction"]

        response = client.post(
            "/auctions/bid", json={"user_id": market["rich"], "auction_id": auction_id, "amount": 120}
        )
        assert response.status_code == 200
        assert response.json() == {"status": "success", "message": "Bid accepted", "new_bid": 120.0}

        too_low = client.post(
            "/auctions/bid", json={"user_id": market["rich"], "auction_id": auction_id, "amount": 110}
        )
        assert too_low.status_code == 400
        assert too_low.json()["detail"] == "Bid must be higher than current bid"

        unfunded = client.post(
            "/auctions/bid", json={"user_id": market["poor"], "auction_id": auction_id, "amount": 130}
        )
        assert unfunded.status_code == 402

        assert client.get(f"/auctions/{auction_id}").json()["current_bid"] == 120.0
        [bid] = client.get(f"/auctions/{auction_id}/bids").json()
        assert bid["amount"] == 120.0
        assert bid["version"] == 1
        assert client.get(f"/users/{market['rich']}").json()["balance"] == 30.0

    def test_unknown_auction_and_user(self, client, market):
        missing_auction = client.post(
            "/auctions/bid", json={"user_id": market["rich"], "auction_id": 99, "amount": 120}
        )
        assert missing_auction.status_code == 404
        missing_user = client.post(
            "/auctions/bid", json={"user_id": 999, "auction_id": market["auction"], "amount": 120}
        )
        assert missing_user.status_code == 404

    def test_malformed_bodies(self, client, market):
        response = client.post(
            "/auctions/bid", json={"user_id": "abc", "auction_id": market["auction"], "amount": 120}
        )
        assert response.status_code == 400
        response = client.post(
            "/auctions/bid", json={"user_id": market["rich"], "auction_id": market["auction"]}
        )
        assert response.status_code == 400
        response = client.post(
            "/auctions/bid", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_amount(self, client, market, literal):
        body = (
            f'{{"user_id": {market["rich"]}, "auction_id": {market["auction"]}, "amount": {literal}}}'
        )
        response = client.post(
            "/auctions/bid", content=body.encode(), headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert client.get(f"/auctions/{market['auction']}").json()["current_bid"] == 100.0

    def test_stats_reflect_outcomes(self, client, market):
        client.post(
            "/auctions/bid", json={"user_id": market["rich"], "auction_id": market["auction"], "amount": 120}
        )
        client.post(
            "/auctions/bid", json={"user_id": market["poor"], "auction_id": market["auction"], "amount": 130}
        )
        stats = client.get("/admin/stats").json()
        assert stats["recorded_bids"] == 1
        assert stats["admission_outcomes"] == {"accepted": 1, "insufficient_funds": 1}
        assert stats["acceptance_rate"] == 0.5
        assert client.get("/admin/reconciliation").json() == {"pending": [], "alerts": []}


class TestRejectionStatus:
    """Test how rejection reasons map onto HTTP status codes."""

    @pytest.fixture
    def stub_coordinator(self, client):
        coordinator = AsyncMock()
        app.dependency_overrides[get_coordinator] = lambda: coordinator
        yield coordinator
        app.dependency_overrides.clear()

    @pytest.mark.parametrize(
        "reason,expected",
        [
            (RejectReason.AUCTION_CLOSED, 403),
            (RejectReason.OUTBID, 409),
            (RejectReason.BALANCE_AUTHORITY_UNAVAILABLE, 503),
        ],
    )
    def test_status_mapping(self, client, stub_coordinator, reason, expected):
        bid = Bid(
            user_id=1,
            auction_id=1,
            amount=Decimal("120"),
            submitted_at=datetime.now(timezone.utc),
            outcome=BidOutcome.REJECTED,
            reason=reason,
        )
        stub_coordinator.submit.return_value = BidDecision(
            bid=bid, auction=None, trail=(AdmissionState.RECEIVED, AdmissionState.REJECTED)
        )

        response = client.post("/auctions/bid", json={"user_id": 1, "auction_id": 1, "amount": 120})

        assert response.status_code == expected
        stub_coordinator.submit.assert_awaited_once()
