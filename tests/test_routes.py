"""
HTTP tests for the auction, notification and internal routes, run against
the in-memory store.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import SELLER
from models.operations.bidding import bid_submit
from models.operations.listings import listing_create_auction
from models.operations.settlement import auction_sweep_expired
from routes.base import router


@pytest.fixture
def client(store, monkeypatch):
    monkeypatch.delenv("INTERNAL_API_KEY", raising=False)
    app = FastAPI()
    app.include_router(router)
    return TestClient(app)


@pytest.fixture
def listing(store):
    expires_at = datetime.now(timezone.utc) + timedelta(days=1)
    return asyncio.run(listing_create_auction(SELLER, 100.0, expires_at, title="Vintage camera"))


def as_user(user_id):
    return {"X-User-Id": user_id}


def place(client, listing_id, user_id, amount):
    return client.post(
        f"/api/auctions/{listing_id}/bids",
        json={"maximum_bid": amount},
        headers=as_user(user_id),
    )


class TestBidRoutes:

    def test_place_bid(self, client, listing):
        response = place(client, listing.id, "A", 150)

        assert response.status_code == 201
        body = response.json()
        assert body["visible_bid"] == 100
        assert body["is_highest_bidder"] is True
        assert body["case"] == "opening_bid"

    def test_requires_user_header(self, client, listing):
        response = client.post(f"/api/auctions/{listing.id}/bids", json={"maximum_bid": 150})

        assert response.status_code == 401

    def test_self_bid_forbidden(self, client, listing):
        response = place(client, listing.id, SELLER, 150)

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "self_bid_forbidden"

    def test_bid_too_low_reports_minimum(self, client, listing):
        place(client, listing.id, "A", 150)
        response = place(client, listing.id, "B", 101)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "bid_too_low"
        assert detail["minimum_bid"] == 105

    def test_must_increase_previous_maximum(self, client, listing):
        place(client, listing.id, "A", 150)
        response = place(client, listing.id, "A", 120)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "must_increase_previous_maximum"

    def test_missing_listing_is_404(self, client):
        response = place(client, "nope", "A", 150)

        assert response.status_code == 404

    def test_ended_listing_is_409(self, client, store):
        expired = asyncio.run(
            listing_create_auction(SELLER, 10.0, datetime.now(timezone.utc) - timedelta(minutes=1))
        )
        response = place(client, expired.id, "A", 20)

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "listing_not_biddable"


class TestAuctionReadRoutes:

    def test_detail_includes_next_minimum(self, client, listing):
        place(client, listing.id, "A", 150)
        place(client, listing.id, "B", 120)

        body = client.get(f"/api/auctions/{listing.id}").json()

        assert body["current_bid"] == 125
        assert body["highest_bidder_id"] == "A"
        assert body["minimum_bid"] == 130
        assert body["bid_count"] == 2

    def test_detail_missing(self, client):
        assert client.get("/api/auctions/nope").status_code == 404

    def test_history_hides_maximum_bids(self, client, listing):
        place(client, listing.id, "A", 150)
        place(client, listing.id, "B", 120)

        history = client.get(f"/api/auctions/{listing.id}/bids").json()

        assert [item["user_id"] for item in history] == ["A", "B"]
        assert all("maximum_bid" not in item for item in history)
        assert history[0]["amount"] == 125

    def test_my_bid_status(self, client, listing):
        place(client, listing.id, "A", 150)

        body = client.get(f"/api/auctions/{listing.id}/bids/me", headers=as_user("A")).json()

        assert body["has_bid"] is True
        assert body["is_highest_bidder"] is True
        assert body["maximum_bid"] == 150

    def test_stream_of_settled_auction_ends(self, client, store, listing):
        asyncio.run(bid_submit(listing.id, "A", 150))
        asyncio.run(auction_sweep_expired(listing.data.expires_at))

        response = client.get(f"/api/auctions/{listing.id}/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert "event: update" in response.text
        assert "event: ended" in response.text
        assert '"sale_buyer_id": "A"' in response.text


class TestRelistRoute:

    def test_seller_relists(self, client, listing):
        place(client, listing.id, "A", 150)

        response = client.post(
            f"/api/auctions/{listing.id}/relist",
            json={"duration_days": 3, "reason": "Better photos"},
            headers=as_user(SELLER),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["relisted_from_id"] == listing.id
        assert body["status"] == "active"
        assert body["current_bid"] is None
        original = client.get(f"/api/auctions/{listing.id}").json()
        assert original["status"] == "relisted"
        assert original["relisted_to_id"] == body["id"]

    def test_non_seller_forbidden(self, client, listing):
        response = client.post(f"/api/auctions/{listing.id}/relist", json={}, headers=as_user("A"))

        assert response.status_code == 403

    def test_relisted_listing_conflicts(self, client, listing):
        client.post(f"/api/auctions/{listing.id}/relist", json={}, headers=as_user(SELLER))
        response = client.post(f"/api/auctions/{listing.id}/relist", json={}, headers=as_user(SELLER))

        assert response.status_code == 409


class TestNotificationRoutes:

    def test_outbid_notification_listed(self, client, listing):
        place(client, listing.id, "A", 120)
        place(client, listing.id, "B", 200)

        notes = client.get("/api/notifications", headers=as_user("A")).json()

        assert [n["type"] for n in notes] == ["outbid"]
        assert notes[0]["metadata"]["new_leader_id"] == "B"


class TestInternalRoutes:

    def test_sweep_requires_key_when_configured(self, client, monkeypatch):
        monkeypatch.setenv("INTERNAL_API_KEY", "s3cret")

        assert client.post("/api/internal/auctions/sweep").status_code == 401
        response = client.post("/api/internal/auctions/sweep", headers={"X-Internal-API-Key": "s3cret"})
        assert response.status_code == 200

    def test_sweep_settles_expired(self, client, store):
        expired = asyncio.run(
            listing_create_auction(SELLER, 10.0, datetime.now(timezone.utc) - timedelta(minutes=1))
        )

        report = client.post("/api/internal/auctions/sweep").json()

        assert report["expired"] == [expired.id]
        assert report["failures"] == {}

    def test_audit(self, client, listing):
        response = client.post("/api/internal/auctions/audit")

        assert response.status_code == 200
        assert response.json() == {"repaired": []}

    def test_bid_attempt_summary(self, client, listing):
        place(client, listing.id, SELLER, 150)
        place(client, listing.id, "A", 1)

        body = client.get("/api/internal/bid-attempts/summary").json()

        assert body["total"] == 2
        assert body["by_failure_code"] == {"self_bid_forbidden": 1, "bid_too_low": 1}
