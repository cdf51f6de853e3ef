"""
Shared fixtures: every test runs against a fresh in-memory store with the
default auction settings (increment 5).
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from models.operations.listings import listing_create_auction
from models.settings import AuctionSettings, set_auction_settings
from models.stores import InMemoryAuctionStore, set_store

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
SELLER = "seller-1"


class YieldingAuctionStore(InMemoryAuctionStore):
    """In-memory store that yields to the event loop before every call,
    so concurrent operations interleave the way they would against a network store."""

    async def listing_get(self, listing_id):
        await asyncio.sleep(0)
        return await super().listing_get(listing_id)

    async def listing_replace(self, listing):
        await asyncio.sleep(0)
        return await super().listing_replace(listing)

    async def listing_find_expired_active(self, now, limit=500):
        await asyncio.sleep(0)
        return await super().listing_find_expired_active(now, limit)

    async def bid_find_active(self, listing_id):
        await asyncio.sleep(0)
        return await super().bid_find_active(listing_id)

    async def bid_insert(self, data):
        await asyncio.sleep(0)
        return await super().bid_insert(data)

    async def bid_replace(self, bid):
        await asyncio.sleep(0)
        return await super().bid_replace(bid)

    async def bid_transition(self, listing_id, to_status, bid_ids=None, from_status="active"):
        await asyncio.sleep(0)
        return await super().bid_transition(listing_id, to_status, bid_ids, from_status)


@pytest.fixture
def settings():
    settings = AuctionSettings(bid_increment=5.0)
    set_auction_settings(settings)
    yield settings
    set_auction_settings(AuctionSettings())


@pytest.fixture
def store(settings):
    store = InMemoryAuctionStore()
    set_store(store)
    yield store
    set_store(None)


@pytest.fixture
def yielding_store(settings):
    store = YieldingAuctionStore()
    set_store(store)
    yield store
    set_store(None)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
async def auction(store):
    """Active auction, starting price 100, ending a day after NOW."""
    return await listing_create_auction(SELLER, 100.0, NOW + timedelta(days=1), title="Vintage camera")


def listing_state(store, listing_id):
    return store.listings[listing_id][0]


def active_rows(store, listing_id):
    rows = [
        data for data, _ in store.bids.values()
        if data.listing_id == listing_id and data.status == "active"
    ]
    return sorted(rows, key=lambda d: (-d.maximum_bid, d.created_at))


def notifications_of(store, user_id, type=None):
    return [
        n for n in store.notifications.values()
        if n.user_id == user_id and (type is None or n.type == type)
    ]


def assert_ledger_consistent(store, listing_id):
    """The listing's leader cache matches the first-ranked active row."""
    listing = listing_state(store, listing_id)
    rows = active_rows(store, listing_id)
    for row in rows:
        assert row.amount <= row.maximum_bid
    users = [row.user_id for row in rows]
    assert len(users) == len(set(users))
    if rows:
        assert listing.current_bid == rows[0].amount
        assert listing.highest_bidder_id == rows[0].user_id
        assert listing.current_bid == max(row.amount for row in rows)
    else:
        assert listing.current_bid is None
        assert listing.highest_bidder_id is None


def mark_pending(store, listing_id, age=timedelta(0)):
    """Leave the marker another process writes while its bid rows are in flight."""
    data, cas = store.listings[listing_id]
    store.listings[listing_id] = (
        data.model_copy(update={
            "pending_write_id": "other-process",
            "pending_write_at": datetime.now(timezone.utc) - age,
        }),
        cas,
    )
