"""
Auction settlement.

A sweep finds active auctions past their deadline and settles each one from
the ledger: the first-ranked active bid wins at its visible amount, the rest
lose, and auctions without bids expire. Each listing is claimed with a CAS
update away from ``active`` before any bid row is touched, so overlapping
sweeps (or a sweep racing a relist) settle a listing at most once. A listing
whose bid submission is still writing its rows is skipped until the next sweep.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from models.entities.couchbase.bids import Bid
from models.entities.couchbase.listings import Listing, ListingData
from models.errors import ConcurrencyConflict
from models.operations.changes import change_publish
from models.operations.listings import listing_write_pending
from models.operations.locks import listing_lock
from models.operations.notifications import (
    notify_auction_ended_no_bids,
    notify_auction_sold,
    notify_auction_won,
)
from models.settings import get_auction_settings
from models.stores import get_store

logger = logging.getLogger(__name__)


class ListingSettlement(BaseModel):
    listing_id: str
    outcome: Literal["sold", "expired", "skipped"]
    winner_id: Optional[str] = None
    amount: Optional[float] = None
    mutations: int = 0


class SettlementReport(BaseModel):
    now: datetime
    examined: int = 0
    sold: List[str] = Field(default_factory=list)
    expired: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)
    mutations: int = 0


async def _settle_rollback(listing: Listing, previous: ListingData, winner: Bid, losers: List[Bid]) -> None:
    """Put a half-settled listing back to active so the next sweep retries it."""
    store = get_store()
    try:
        await store.bid_transition(listing.id, "active", bid_ids=[winner.id], from_status="won")
        if losers:
            await store.bid_transition(
                listing.id, "active", bid_ids=[b.id for b in losers], from_status="lost"
            )
        listing.data = previous
        await store.listing_replace(listing)
        logger.info(f"Rolled back settlement of {listing.id}")
    except Exception:
        logger.error(f"Rollback of settlement for {listing.id} failed", exc_info=True)


async def auction_settle(listing_id: str, now: Optional[datetime] = None) -> ListingSettlement:
    """Settle one expired auction. Raises on storage failure after rolling back."""
    now = now or datetime.now(timezone.utc)
    store = get_store()
    skipped = ListingSettlement(listing_id=listing_id, outcome="skipped")

    async with listing_lock(listing_id):
        listing = await store.listing_get(listing_id)
        if (
            listing is None
            or listing.data.listing_type != "auction"
            or listing.data.status != "active"
            or listing.data.expires_at > now
        ):
            return skipped
        if listing_write_pending(listing):
            logger.info(f"Listing {listing_id} has a bid write in progress, skipping")
            return skipped

        bids = await store.bid_find_active(listing_id)
        previous = listing.data.model_copy(deep=True)
        listing.data.pending_write_id = None
        listing.data.pending_write_at = None

        if not bids:
            listing.data.status = "expired"
            try:
                await store.listing_replace(listing)
            except ConcurrencyConflict:
                logger.info(f"Listing {listing_id} claimed by another writer, skipping")
                return skipped
            result = ListingSettlement(listing_id=listing_id, outcome="expired", mutations=1)
        else:
            winner, losers = bids[0], bids[1:]
            listing.data.status = "sold"
            listing.data.sale_buyer_id = winner.data.user_id
            listing.data.sale_amount = winner.data.amount
            listing.data.sale_date = now
            listing.data.current_bid = winner.data.amount
            listing.data.highest_bidder_id = winner.data.user_id
            try:
                await store.listing_replace(listing)
            except ConcurrencyConflict:
                logger.info(f"Listing {listing_id} claimed by another writer, skipping")
                return skipped

            try:
                won = await store.bid_transition(listing_id, "won", bid_ids=[winner.id])
                lost = await store.bid_transition(listing_id, "lost")
            except Exception:
                logger.error(f"Bid transitions for {listing_id} failed, rolling back", exc_info=True)
                await _settle_rollback(listing, previous, winner, losers)
                raise
            result = ListingSettlement(
                listing_id=listing_id,
                outcome="sold",
                winner_id=winner.data.user_id,
                amount=winner.data.amount,
                mutations=1 + won + lost,
            )

    change_publish("listings", "UPDATE", listing_id)
    title = listing.data.title
    seller_id = listing.data.seller_id
    if result.outcome == "sold":
        change_publish("bids", "UPDATE", listing_id)
        logger.info(f"Auction {listing_id} sold to {result.winner_id} for {result.amount:.2f}")
        await notify_auction_sold(seller_id, listing_id, title, result.amount, result.winner_id)
        await notify_auction_won(result.winner_id, listing_id, title, result.amount, seller_id)
    else:
        logger.info(f"Auction {listing_id} ended with no bids")
        await notify_auction_ended_no_bids(seller_id, listing_id, title)
    return result


async def auction_sweep_expired(now: Optional[datetime] = None) -> SettlementReport:
    """Settle every active auction whose deadline is at or before *now*.

    Listings are settled concurrently up to ``sweep_concurrency``. A failure on
    one listing is recorded in the report and does not stop the others.
    """
    now = now or datetime.now(timezone.utc)
    listings = await get_store().listing_find_expired_active(now)
    report = SettlementReport(now=now, examined=len(listings))
    semaphore = asyncio.Semaphore(get_auction_settings().sweep_concurrency)

    async def settle_one(listing_id: str) -> None:
        async with semaphore:
            try:
                result = await auction_settle(listing_id, now)
            except Exception as e:
                logger.error(f"Settlement of {listing_id} failed", exc_info=True)
                report.failures[listing_id] = str(e) or type(e).__name__
                return
        getattr(report, result.outcome).append(listing_id)
        report.mutations += result.mutations

    await asyncio.gather(*(settle_one(listing.id) for listing in listings))

    if listings:
        logger.info(
            f"Sweep at {now.isoformat()}: {len(report.sold)} sold, {len(report.expired)} expired, "
            f"{len(report.skipped)} skipped, {len(report.failures)} failed"
        )
    return report
