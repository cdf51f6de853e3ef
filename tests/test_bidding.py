"""
Tests for proxy bid validation and visible-price calculation.

Starting price 100, increment 5 throughout.
"""

import math
from datetime import timedelta

import pytest

from conftest import NOW, SELLER, active_rows, assert_ledger_consistent, listing_state, notifications_of
from models.errors import (
    BidTooLow,
    ListingNotBiddable,
    MustIncreasePreviousMaximum,
    SelfBidForbidden,
)
from models.operations.bidding import auction_state, bid_evaluate, bid_submit
from models.operations.listings import listing_create_auction


async def submit(listing_id, bidder, amount, now=NOW):
    return await bid_submit(listing_id, bidder, amount, now=now)


class TestProxyScenario:
    """The canonical A/B walkthrough from opening bid to a held lead."""

    async def test_opening_bid_is_starting_price(self, store, auction):
        outcome, err = await submit(auction.id, "A", 100)

        assert err is None
        assert outcome.case == "opening_bid"
        assert outcome.visible_bid == 100
        assert outcome.is_highest_bidder
        listing = listing_state(store, auction.id)
        assert listing.current_bid == 100
        assert listing.highest_bidder_id == "A"
        assert listing.bid_count == 1

    async def test_higher_maximum_takes_lead_one_increment_over(self, store, auction):
        await submit(auction.id, "A", 100)
        outcome, err = await submit(auction.id, "B", 150)

        assert err is None
        assert outcome.case == "new_leader"
        assert outcome.visible_bid == 105
        assert outcome.highest_bidder_id == "B"
        assert_ledger_consistent(store, auction.id)
        outbid = notifications_of(store, "A", "outbid")
        assert len(outbid) == 1
        assert outbid[0].metadata.amount == 105
        assert outbid[0].metadata.new_leader_id == "B"

    async def test_lower_maximum_pushes_leader_price(self, store, auction):
        await submit(auction.id, "A", 100)
        await submit(auction.id, "B", 150)
        outcome, err = await submit(auction.id, "A", 130)

        assert err is None
        assert outcome.case == "leader_holds"
        assert outcome.visible_bid == 135
        assert not outcome.is_highest_bidder
        assert outcome.highest_bidder_id == "B"

        rows = {row.user_id: row for row in active_rows(store, auction.id)}
        assert rows["B"].amount == 135
        assert rows["A"].amount == 130
        assert rows["A"].maximum_bid == 130
        assert_ledger_consistent(store, auction.id)

    async def test_leader_must_increase_own_maximum(self, store, auction):
        await submit(auction.id, "A", 100)
        await submit(auction.id, "B", 150)
        await submit(auction.id, "A", 130)
        outcome, err = await submit(auction.id, "B", 140)

        assert outcome is None
        assert isinstance(err, MustIncreasePreviousMaximum)
        assert err.previous_maximum == 150
        assert listing_state(store, auction.id).current_bid == 135

    async def test_seller_cannot_bid(self, store, auction):
        outcome, err = await submit(auction.id, SELLER, 200)

        assert outcome is None
        assert isinstance(err, SelfBidForbidden)
        assert store.bids == {}

    async def test_every_accepted_bid_notifies_seller(self, store, auction):
        await submit(auction.id, "A", 100)
        await submit(auction.id, "B", 150)
        await submit(auction.id, "A", 130)

        new_bids = notifications_of(store, SELLER, "new_bid")
        assert sorted(n.metadata.amount for n in new_bids) == [100, 105, 135]


class TestPreconditions:

    async def test_missing_listing(self, store):
        outcome, err = await submit("nope", "A", 100)

        assert outcome is None
        assert isinstance(err, ListingNotBiddable)
        assert not err.listing_found

    async def test_expired_listing(self, store, auction):
        outcome, err = await submit(auction.id, "A", 100, now=NOW + timedelta(days=1))

        assert isinstance(err, ListingNotBiddable)
        assert err.listing_found

    async def test_fixed_price_listing(self, store):
        listing = await listing_create_auction(
            SELLER, 50.0, NOW + timedelta(days=1), listing_type="fixed_price"
        )
        _, err = await submit(listing.id, "A", 60)

        assert isinstance(err, ListingNotBiddable)

    async def test_inactive_checked_before_self_bid(self, store, auction):
        _, err = await submit(auction.id, SELLER, 200, now=NOW + timedelta(days=2))

        assert isinstance(err, ListingNotBiddable)

    async def test_below_starting_price(self, store, auction):
        _, err = await submit(auction.id, "A", 99.99)

        assert isinstance(err, BidTooLow)
        assert err.minimum == 100

    async def test_below_one_increment_over_current(self, store, auction):
        await submit(auction.id, "A", 100)
        await submit(auction.id, "B", 150)
        _, err = await submit(auction.id, "C", 109)

        assert isinstance(err, BidTooLow)
        assert err.minimum == 110

    @pytest.mark.parametrize("amount", [0, -5, math.nan, math.inf])
    async def test_non_positive_or_non_finite_rejected(self, store, auction, amount):
        _, err = await submit(auction.id, "A", amount)

        assert isinstance(err, BidTooLow)

    async def test_too_low_checked_before_previous_maximum(self, store, auction):
        await submit(auction.id, "A", 100)
        await submit(auction.id, "B", 150)
        _, err = await submit(auction.id, "B", 106)

        assert isinstance(err, BidTooLow)

    async def test_rejections_are_logged_as_attempts(self, store, auction):
        await submit(auction.id, SELLER, 200)
        await submit(auction.id, "A", 10)

        codes = sorted(a.failure_code for a in store.bid_attempts.values())
        assert codes == ["bid_too_low", "self_bid_forbidden"]

    async def test_rejection_does_not_mutate(self, store, auction):
        await submit(auction.id, "A", 100)
        writes = store.writes
        await submit(auction.id, "B", 101)

        assert store.writes == writes


class TestProxyCases:

    async def test_leader_raising_ceiling_keeps_price(self, store, auction):
        await submit(auction.id, "A", 100)
        await submit(auction.id, "B", 150)
        outcome, err = await submit(auction.id, "B", 300)

        assert err is None
        assert outcome.case == "own_ceiling_raised"
        assert outcome.visible_bid == 105
        rows = {row.user_id: row for row in active_rows(store, auction.id)}
        assert rows["B"].maximum_bid == 300
        assert notifications_of(store, "B", "outbid") == []
        assert_ledger_consistent(store, auction.id)

    async def test_new_lead_capped_at_own_maximum(self, store, auction):
        await submit(auction.id, "A", 120)
        outcome, _ = await submit(auction.id, "B", 122)

        assert outcome.case == "new_leader"
        assert outcome.visible_bid == 122
        assert_ledger_consistent(store, auction.id)

    async def test_leader_holds_capped_at_leader_maximum(self, store, auction):
        await submit(auction.id, "A", 150)
        outcome, _ = await submit(auction.id, "B", 148)

        assert outcome.case == "leader_holds"
        assert outcome.visible_bid == 150
        assert outcome.highest_bidder_id == "A"

    async def test_equal_maximum_from_new_bidder_loses(self, store, auction):
        await submit(auction.id, "A", 150)
        outcome, _ = await submit(auction.id, "B", 150)

        assert outcome.case == "leader_holds"
        assert outcome.visible_bid == 150
        assert outcome.highest_bidder_id == "A"
        assert_ledger_consistent(store, auction.id)

    async def test_equal_maximum_from_older_row_takes_lead(self, store, auction):
        await submit(auction.id, "A", 100)
        await submit(auction.id, "B", 150)
        outcome, _ = await submit(auction.id, "A", 150)

        assert outcome.case == "new_leader"
        assert outcome.visible_bid == 150
        assert outcome.highest_bidder_id == "A"
        assert notifications_of(store, "B", "outbid")
        assert_ledger_consistent(store, auction.id)

    async def test_one_row_per_bidder(self, store, auction):
        await submit(auction.id, "A", 100)
        await submit(auction.id, "B", 150)
        await submit(auction.id, "A", 200)
        await submit(auction.id, "A", 260)

        assert sorted(row.user_id for row in active_rows(store, auction.id)) == ["A", "B"]
        assert listing_state(store, auction.id).bid_count == 4


class TestPureEvaluation:

    async def test_state_without_bids(self, store, auction):
        state = auction_state(auction, [], 5.0)

        assert not state.has_bids
        assert state.minimum_acceptable == 100
        assert state.highest_max_bid == 0

    async def test_evaluate_does_not_touch_storage(self, store, auction):
        writes = store.writes
        plan = bid_evaluate(auction, [], "A", 250.0, NOW, 5.0)

        assert plan.case == "opening_bid"
        assert plan.new_visible_bid == 100
        assert store.writes == writes

    async def test_evaluate_uses_given_increment(self, store, auction):
        await submit(auction.id, "A", 100)
        bids = await store.bid_find_active(auction.id)
        plan = bid_evaluate(await store.listing_get(auction.id), bids, "B", 500.0, NOW, 25.0)

        assert plan.new_visible_bid == 125
