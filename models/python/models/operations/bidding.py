"""
Proxy bidding: validation and visible-price calculation.

A bidder submits a private maximum. The visible price only moves as far as
needed to keep the leader ahead of the runner-up by one increment, capped at
the leader's maximum:

- ``own_ceiling_raised``: the leader raises their own maximum; price unchanged
- ``opening_bid``: first bid on the listing; price is the starting price
- ``new_leader``: bidder beats the highest maximum; price is one increment
  over the old maximum, capped at the bidder's maximum
- ``leader_holds``: bidder falls short; price is one increment over the
  bidder's maximum, capped at the leader's maximum

``bid_evaluate`` is the pure calculation. ``bid_submit`` wraps it with the
per-listing lock, CAS-guarded writes, conflict retries, the caller's timeout
and the post-commit side effects.
"""

import asyncio
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel

from models.entities.couchbase.bids import Bid, BidData
from models.entities.couchbase.listings import Listing
from models.errors import (
    BidError,
    BidTooLow,
    ConcurrencyConflict,
    ListingNotBiddable,
    MustIncreasePreviousMaximum,
    OperationTimeout,
    SelfBidForbidden,
)
from models.operations.bids import bid_attempt_record
from models.operations.changes import change_publish
from models.operations.listings import (
    listing_clear_pending_write,
    listing_reconcile_bid_cache_locked,
    listing_write_pending,
)
from models.operations.locks import listing_lock
from models.operations.notifications import notify_new_bid, notify_outbid
from models.settings import get_auction_settings
from models.stores import get_store

logger = logging.getLogger(__name__)


ProxyCase = Literal["own_ceiling_raised", "opening_bid", "new_leader", "leader_holds"]


class AuctionState(BaseModel):
    """Bid state of a listing as seen by the next submission."""
    price: float
    bid_increment: float
    has_bids: bool
    current_visible_bid: float
    highest_max_bid: float
    highest_bidder_id: Optional[str] = None
    minimum_acceptable: float


class BidPlan(BaseModel):
    """The writes one accepted submission performs."""
    case: ProxyCase
    new_visible_bid: float
    bidder_amount: float
    leader_id: str
    leader_amount: float
    previous_leader_id: Optional[str] = None
    previous_maximum: Optional[float] = None


class BidOutcome(BaseModel):
    listing_id: str
    bid_id: str
    case: ProxyCase
    visible_bid: float
    is_highest_bidder: bool
    highest_bidder_id: str


def auction_state(listing: Listing, active_bids: List[Bid], bid_increment: float) -> AuctionState:
    """Summarize ranked active bids. *active_bids* must already be ranked."""
    price = listing.data.price
    if not active_bids:
        return AuctionState(
            price=price,
            bid_increment=bid_increment,
            has_bids=False,
            current_visible_bid=price,
            highest_max_bid=0.0,
            minimum_acceptable=price,
        )

    leader = active_bids[0]
    current = max(bid.data.amount for bid in active_bids)
    return AuctionState(
        price=price,
        bid_increment=bid_increment,
        has_bids=True,
        current_visible_bid=current,
        highest_max_bid=leader.data.maximum_bid,
        highest_bidder_id=leader.data.user_id,
        minimum_acceptable=current + bid_increment,
    )


def listing_check_biddable(listing: Optional[Listing], bidder_id: str, now: datetime) -> Listing:
    if listing is None:
        raise ListingNotBiddable("Listing not found", listing_found=False)
    data = listing.data
    if data.listing_type != "auction":
        raise ListingNotBiddable("This listing is not an auction")
    if data.status != "active":
        raise ListingNotBiddable(f"This auction is no longer active (status: {data.status})")
    if data.expires_at <= now:
        raise ListingNotBiddable("This auction has ended")
    if data.seller_id == bidder_id:
        raise SelfBidForbidden("You cannot bid on your own listing")
    return listing


def bid_evaluate(
    listing: Optional[Listing],
    active_bids: List[Bid],
    bidder_id: str,
    maximum_bid: float,
    now: datetime,
    bid_increment: float,
) -> BidPlan:
    """Validate a submission and compute the proxy outcome. Raises ``BidError``."""
    listing = listing_check_biddable(listing, bidder_id, now)
    state = auction_state(listing, active_bids, bid_increment)

    if not math.isfinite(maximum_bid) or maximum_bid <= 0 or maximum_bid < state.minimum_acceptable:
        raise BidTooLow(state.minimum_acceptable)

    existing = next((b for b in active_bids if b.data.user_id == bidder_id), None)
    previous_maximum = existing.data.maximum_bid if existing else None
    if existing and maximum_bid <= existing.data.maximum_bid:
        raise MustIncreasePreviousMaximum(existing.data.maximum_bid)

    if not state.has_bids:
        visible = state.minimum_acceptable
        return BidPlan(
            case="opening_bid",
            new_visible_bid=visible,
            bidder_amount=visible,
            leader_id=bidder_id,
            leader_amount=visible,
        )

    if state.highest_bidder_id == bidder_id:
        visible = state.current_visible_bid
        return BidPlan(
            case="own_ceiling_raised",
            new_visible_bid=visible,
            bidder_amount=visible,
            leader_id=bidder_id,
            leader_amount=visible,
            previous_leader_id=bidder_id,
            previous_maximum=previous_maximum,
        )

    leader = active_bids[0]
    highest = state.highest_max_bid
    # A new row is always younger than the leader's; an existing older row wins the tie
    takes_lead = maximum_bid > highest or (
        maximum_bid == highest
        and existing is not None
        and existing.data.created_at < leader.data.created_at
    )

    if takes_lead:
        visible = min(highest + bid_increment, maximum_bid)
        return BidPlan(
            case="new_leader",
            new_visible_bid=visible,
            bidder_amount=visible,
            leader_id=bidder_id,
            leader_amount=visible,
            previous_leader_id=state.highest_bidder_id,
            previous_maximum=previous_maximum,
        )

    visible = min(maximum_bid, highest - bid_increment) + bid_increment
    return BidPlan(
        case="leader_holds",
        new_visible_bid=visible,
        bidder_amount=maximum_bid,
        leader_id=leader.data.user_id,
        leader_amount=visible,
        previous_leader_id=state.highest_bidder_id,
        previous_maximum=previous_maximum,
    )


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

async def _bid_commit(
    listing_id: str,
    bidder_id: str,
    maximum_bid: float,
    now: datetime,
    deadline: float,
) -> Tuple[BidOutcome, BidPlan, Listing, bool]:
    """One locked read-evaluate-write pass.

    The deadline bounds waiting for the lock and the reads. The listing write
    carries a pending marker that makes other processes back off until the
    bid rows are written and the marker is cleared. Once the listing has been
    written the bid rows are always written too.
    """
    store = get_store()
    loop = asyncio.get_running_loop()
    increment = get_auction_settings().bid_increment

    async with listing_lock(listing_id, timeout=max(deadline - loop.time(), 0)):
        try:
            listing = await asyncio.wait_for(store.listing_get(listing_id), deadline - loop.time())
            if listing is not None and listing_write_pending(listing):
                raise ConcurrencyConflict(f"Listing {listing_id} has a bid write in progress")
            active_bids = []
            if listing is not None:
                active_bids = await asyncio.wait_for(
                    store.bid_find_active(listing_id), deadline - loop.time()
                )
        except asyncio.TimeoutError:
            raise OperationTimeout(f"Timed out reading auction state of {listing_id}")

        plan = bid_evaluate(listing, active_bids, bidder_id, maximum_bid, now, increment)

        pending_write_id = str(uuid.uuid4())
        listing.data.current_bid = plan.new_visible_bid
        listing.data.highest_bidder_id = plan.leader_id
        listing.data.bid_count += 1
        listing.data.pending_write_id = pending_write_id
        listing.data.pending_write_at = datetime.now(timezone.utc)
        await store.listing_replace(listing)

        existing = next((b for b in active_bids if b.data.user_id == bidder_id), None)
        try:
            if existing:
                existing.data.maximum_bid = maximum_bid
                existing.data.amount = plan.bidder_amount
                existing.data.bid_increment = increment
                bid = await store.bid_replace(existing)
            else:
                bid = await store.bid_insert(BidData(
                    listing_id=listing_id,
                    user_id=bidder_id,
                    amount=plan.bidder_amount,
                    maximum_bid=maximum_bid,
                    bid_increment=increment,
                ))

            if plan.case == "leader_holds":
                leader = active_bids[0]
                leader.data.amount = plan.leader_amount
                await store.bid_replace(leader)
        except Exception:
            logger.error(
                f"Bid rows for {bidder_id} on {listing_id} failed after the listing was updated, "
                f"reconciling listing cache",
                exc_info=True,
            )
            await listing_reconcile_bid_cache_locked(
                listing_id, pending_write_id=pending_write_id, bid_count_adjust=-1
            )
            raise

        await listing_clear_pending_write(listing, pending_write_id)

    outcome = BidOutcome(
        listing_id=listing_id,
        bid_id=bid.id,
        case=plan.case,
        visible_bid=plan.new_visible_bid,
        is_highest_bidder=plan.leader_id == bidder_id,
        highest_bidder_id=plan.leader_id,
    )
    return outcome, plan, listing, existing is None


async def _bid_side_effects(bidder_id: str, plan: BidPlan, listing: Listing, inserted: bool) -> None:
    change_publish("listings", "UPDATE", listing.id)
    change_publish("bids", "INSERT" if inserted else "UPDATE", listing.id)

    title = listing.data.title
    previous = plan.previous_leader_id
    if previous and previous != bidder_id and previous != plan.leader_id:
        await notify_outbid(previous, listing.id, title, plan.new_visible_bid, plan.leader_id)
    await notify_new_bid(listing.data.seller_id, listing.id, title, plan.new_visible_bid, bidder_id)


async def bid_submit(
    listing_id: str,
    bidder_id: str,
    maximum_bid: float,
    *,
    now: Optional[datetime] = None,
    timeout: Optional[float] = None,
) -> Tuple[Optional[BidOutcome], Optional[BidError]]:
    """Place or raise a proxy bid.

    Returns ``(outcome, None)`` on success or ``(None, error)``. Concurrent
    updates are retried with exponential backoff (10 ms, 20 ms, ...) before
    ``ConcurrencyConflict`` is returned. Rejected submissions are logged as
    bid attempts.
    """
    settings = get_auction_settings()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + (settings.bid_timeout_seconds if timeout is None else timeout)

    error: Optional[BidError] = None
    backoff_ms = 10
    for attempt in range(settings.max_conflict_retries + 1):
        attempt_now = now or datetime.now(timezone.utc)
        try:
            outcome, plan, listing, inserted = await _bid_commit(
                listing_id, bidder_id, maximum_bid, attempt_now, deadline
            )
        except ConcurrencyConflict as e:
            error = e
            if attempt == settings.max_conflict_retries:
                break
            if loop.time() + backoff_ms / 1000 >= deadline:
                error = OperationTimeout(f"Timed out retrying bid on {listing_id}")
                break
            logger.info(f"Bid conflict on {listing_id} (attempt {attempt + 1}), retrying")
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2
            continue
        except BidError as e:
            error = e
            break

        logger.info(
            f"Bid accepted on {listing_id} by {bidder_id}: {plan.case}, "
            f"visible {plan.new_visible_bid:.2f}, leader {plan.leader_id}"
        )
        await _bid_side_effects(bidder_id, plan, listing, inserted)
        return outcome, None

    logger.info(f"Bid rejected on {listing_id} by {bidder_id}: {error.code} ({error.message})")
    await bid_attempt_record(listing_id, bidder_id, maximum_bid, error, now)
    return None, error
