"""
Tests for leader-cache reconciliation, the active-auction audit, bid queries
and bid attempt housekeeping.
"""

from datetime import timedelta

from conftest import NOW, SELLER, listing_state, mark_pending
from models.operations.bidding import bid_submit
from models.operations.bids import (
    bid_attempt_purge,
    bid_attempt_summary,
    bid_get_by_bidder,
    bid_get_by_listing,
    bid_get_user_status,
)
from models.operations.listings import (
    auction_audit_active,
    listing_create_auction,
    listing_reconcile_bid_cache,
)


def corrupt_cache(store, listing_id, current_bid, leader):
    data, cas = store.listings[listing_id]
    store.listings[listing_id] = (
        data.model_copy(update={"current_bid": current_bid, "highest_bidder_id": leader}),
        cas,
    )


class TestReconcile:

    async def test_consistent_listing_needs_no_fix(self, store, auction):
        await bid_submit(auction.id, "A", 100, now=NOW)

        assert await listing_reconcile_bid_cache(auction.id) is False

    async def test_drifted_cache_is_rebuilt_from_ledger(self, store, auction):
        await bid_submit(auction.id, "A", 100, now=NOW)
        await bid_submit(auction.id, "B", 150, now=NOW)
        corrupt_cache(store, auction.id, 999.0, "A")

        assert await listing_reconcile_bid_cache(auction.id) is True

        listing = listing_state(store, auction.id)
        assert listing.current_bid == 105
        assert listing.highest_bidder_id == "B"
        assert await listing_reconcile_bid_cache(auction.id) is False

    async def test_cache_without_bids_is_cleared(self, store, auction):
        corrupt_cache(store, auction.id, 120.0, "ghost")

        assert await listing_reconcile_bid_cache(auction.id) is True
        assert listing_state(store, auction.id).current_bid is None

    async def test_settled_listings_are_not_touched(self, store, auction):
        data, cas = store.listings[auction.id]
        store.listings[auction.id] = (data.model_copy(update={"status": "sold", "current_bid": 5.0}), cas)

        assert await listing_reconcile_bid_cache(auction.id) is False
        assert listing_state(store, auction.id).current_bid == 5.0

    async def test_listing_with_live_pending_write_is_left_alone(self, store, auction):
        corrupt_cache(store, auction.id, 120.0, "B")
        mark_pending(store, auction.id)

        assert await listing_reconcile_bid_cache(auction.id) is False
        assert listing_state(store, auction.id).current_bid == 120.0

    async def test_abandoned_pending_write_is_cleared(self, store, auction):
        await bid_submit(auction.id, "A", 100, now=NOW)
        corrupt_cache(store, auction.id, 105.0, "B")
        mark_pending(store, auction.id, age=timedelta(hours=1))

        assert await listing_reconcile_bid_cache(auction.id) is True

        listing = listing_state(store, auction.id)
        assert listing.current_bid == 100
        assert listing.highest_bidder_id == "A"
        assert listing.pending_write_id is None

    async def test_audit_reports_repaired_listings(self, store, auction):
        healthy = await listing_create_auction(SELLER, 20.0, NOW + timedelta(days=1))
        await bid_submit(auction.id, "A", 100, now=NOW)
        await bid_submit(healthy.id, "A", 20, now=NOW)
        corrupt_cache(store, auction.id, None, None)

        repaired = await auction_audit_active()

        assert repaired == [auction.id]
        assert listing_state(store, auction.id).current_bid == 100


class TestBidQueries:

    async def test_user_status(self, store, auction):
        await bid_submit(auction.id, "A", 100, now=NOW)
        await bid_submit(auction.id, "B", 150, now=NOW)

        leader = await bid_get_user_status(auction.id, "B")
        other = await bid_get_user_status(auction.id, "A")
        stranger = await bid_get_user_status(auction.id, "C")

        assert leader.has_bid and leader.is_highest_bidder
        assert leader.visible_amount == 105
        assert leader.maximum_bid == 150
        assert other.has_bid and not other.is_highest_bidder
        assert not stranger.has_bid
        assert stranger.maximum_bid is None

    async def test_history_is_ranked(self, store, auction):
        await bid_submit(auction.id, "A", 100, now=NOW)
        await bid_submit(auction.id, "B", 150, now=NOW)
        await bid_submit(auction.id, "C", 120, now=NOW)

        history = await bid_get_by_listing(auction.id)

        assert [b.data.user_id for b in history] == ["B", "C", "A"]

    async def test_bids_by_bidder(self, store, auction):
        other = await listing_create_auction(SELLER, 10.0, NOW + timedelta(days=1))
        await bid_submit(auction.id, "A", 100, now=NOW)
        await bid_submit(other.id, "A", 10, now=NOW)

        bids = await bid_get_by_bidder("A")

        assert {b.data.listing_id for b in bids} == {other.id, auction.id}


class TestBidAttempts:

    async def test_summary_counts_by_failure_code(self, store, auction):
        await bid_submit(auction.id, SELLER, 100, now=NOW)
        await bid_submit(auction.id, "A", 1, now=NOW)
        await bid_submit(auction.id, "B", 2, now=NOW)

        summary = await bid_attempt_summary(NOW - timedelta(hours=1))

        assert summary == {"self_bid_forbidden": 1, "bid_too_low": 2}

    async def test_purge_removes_only_old_attempts(self, store, auction):
        await bid_submit(auction.id, "A", 1, now=NOW - timedelta(days=40))
        await bid_submit(auction.id, "B", 1, now=NOW)

        removed = await bid_attempt_purge(now=NOW)

        assert removed == 1
        assert [a.user_id for a in store.bid_attempts.values()] == ["B"]
