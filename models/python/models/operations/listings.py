import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional

from models.entities.couchbase.listings import Listing, ListingData
from models.errors import ConcurrencyConflict
from models.operations.changes import change_publish
from models.operations.locks import listing_lock
from models.operations.notifications import notify_listing_relisted
from models.settings import get_auction_settings
from models.stores import get_store

logger = logging.getLogger(__name__)

RELISTABLE_STATUSES = ("active", "sold", "expired")


async def listing_create_auction(
    seller_id: str,
    price: float,
    expires_at: datetime,
    title: str = "",
    listing_type: Literal["auction", "fixed_price"] = "auction",
) -> Listing:
    if price <= 0:
        raise ValueError("Starting price must be positive")
    data = ListingData(
        seller_id=seller_id,
        title=title,
        listing_type=listing_type,
        price=price,
        expires_at=expires_at,
    )
    listing = await get_store().listing_insert(data)
    change_publish("listings", "INSERT", listing.id)
    return listing


async def listing_get(listing_id: str) -> Optional[Listing]:
    return await get_store().listing_get(listing_id)


# ---------------------------------------------------------------------------
# Pending bid writes
# ---------------------------------------------------------------------------

def listing_write_pending(listing: Listing, now: Optional[datetime] = None) -> bool:
    """True while a bid submission sits between its listing write and its bid-row writes.

    A marker older than ``pending_write_lease_seconds`` belongs to a writer
    that died mid-submission and is ignored.
    """
    data = listing.data
    if data.pending_write_id is None or data.pending_write_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    lease = timedelta(seconds=get_auction_settings().pending_write_lease_seconds)
    return now - data.pending_write_at < lease


async def listing_clear_pending_write(listing: Listing, pending_write_id: str) -> None:
    """Drop the submission's marker once its bid rows are written. Never raises."""
    if listing.data.pending_write_id != pending_write_id:
        return
    listing.data.pending_write_id = None
    listing.data.pending_write_at = None
    try:
        await get_store().listing_replace(listing)
    except Exception:
        logger.error(
            f"Could not clear pending write {pending_write_id} on {listing.id}, "
            f"it expires with its lease",
            exc_info=True,
        )


# ---------------------------------------------------------------------------
# Leader cache reconciliation
# ---------------------------------------------------------------------------

async def listing_reconcile_bid_cache_locked(
    listing_id: str,
    max_retries: int = 3,
    *,
    pending_write_id: Optional[str] = None,
    bid_count_adjust: int = 0,
) -> bool:
    """Rebuild ``current_bid`` / ``highest_bidder_id`` from the ranked active bids.

    Caller must hold the listing lock. A listing with another writer's live
    pending marker is left alone. The submission that owns the marker passes
    *pending_write_id* to clear it and *bid_count_adjust* to undo its count.
    Returns True if the listing was rewritten.
    """
    store = get_store()
    backoff_ms = 10
    for attempt in range(max_retries + 1):
        listing = await store.listing_get(listing_id)
        if listing is None or listing.data.status != "active":
            return False

        marker = listing.data.pending_write_id
        owned = pending_write_id is not None and marker == pending_write_id
        if marker is not None and not owned and listing_write_pending(listing):
            logger.info(f"Listing {listing_id} has a bid write in progress, not reconciling")
            return False

        bids = await store.bid_find_active(listing_id)
        current_bid = bids[0].data.amount if bids else None
        leader_id = bids[0].data.user_id if bids else None
        drifted = listing.data.current_bid != current_bid or listing.data.highest_bidder_id != leader_id
        if not drifted and marker is None:
            return False

        if drifted:
            logger.warning(
                f"Listing {listing_id} cache drifted: {listing.data.current_bid}/{listing.data.highest_bidder_id} "
                f"-> {current_bid}/{leader_id}"
            )
        listing.data.current_bid = current_bid
        listing.data.highest_bidder_id = leader_id
        if owned:
            listing.data.bid_count = max(listing.data.bid_count + bid_count_adjust, 0)
        listing.data.pending_write_id = None
        listing.data.pending_write_at = None
        try:
            await store.listing_replace(listing)
            return True
        except ConcurrencyConflict:
            if attempt == max_retries:
                raise
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2
    return False


async def listing_reconcile_bid_cache(listing_id: str) -> bool:
    async with listing_lock(listing_id):
        fixed = await listing_reconcile_bid_cache_locked(listing_id)
    if fixed:
        change_publish("listings", "UPDATE", listing_id)
    return fixed


async def auction_audit_active() -> List[str]:
    """Reconcile every active auction. Returns the ids that needed repair."""
    repaired = []
    for listing in await get_store().listing_find_active_auctions():
        try:
            if await listing_reconcile_bid_cache(listing.id):
                repaired.append(listing.id)
        except Exception:
            logger.error(f"Audit of listing {listing.id} failed", exc_info=True)
    if repaired:
        logger.warning(f"Auction audit repaired {len(repaired)} listings: {repaired}")
    else:
        logger.info("Auction audit found no inconsistencies")
    return repaired


# ---------------------------------------------------------------------------
# Relist
# ---------------------------------------------------------------------------

async def _relist_rollback(original: Listing, previous: ListingData, bid_ids: List[str], new_id: str) -> None:
    """Best-effort undo of a partially applied relist."""
    store = get_store()
    try:
        if bid_ids:
            await store.bid_transition(
                original.id, "active", bid_ids=bid_ids, from_status="cancelled_due_to_relist"
            )
        original.data = previous
        await store.listing_replace(original)
        logger.info(f"Rolled back relist of {original.id} to {new_id}")
    except Exception:
        logger.error(f"Rollback of relist {original.id} -> {new_id} failed", exc_info=True)


async def listing_relist(
    listing_id: str,
    seller_id: str,
    *,
    duration: Optional[timedelta] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Listing:
    """Void all active bids and start a fresh auction with the same terms.

    The original becomes ``relisted`` and points at the new listing; every
    active bidder is notified with the new listing id. Raises ``ValueError``
    when *seller_id* may not relist it and ``ConcurrencyConflict`` while a
    bid write is in progress.
    """
    now = now or datetime.now(timezone.utc)
    if duration is None:
        duration = timedelta(days=get_auction_settings().relist_duration_days)
    store = get_store()

    async with listing_lock(listing_id):
        original = await store.listing_get(listing_id)
        if original is None:
            raise ValueError(f"Listing {listing_id} not found")
        if original.data.seller_id != seller_id:
            raise ValueError("Only the seller can relist this listing")
        if original.data.status not in RELISTABLE_STATUSES:
            raise ValueError(f"Listing cannot be relisted (status: {original.data.status})")
        if listing_write_pending(original):
            raise ConcurrencyConflict(f"Listing {listing_id} has a bid write in progress")

        active_bids = await store.bid_find_active(listing_id)
        bid_ids = [bid.id for bid in active_bids]
        new_id = str(uuid.uuid4())

        previous = original.data.model_copy(deep=True)
        original.data.status = "relisted"
        original.data.relisted_to_id = new_id
        original.data.relist_reason = reason
        original.data.pending_write_id = None
        original.data.pending_write_at = None
        await store.listing_replace(original)

        try:
            if bid_ids:
                await store.bid_transition(listing_id, "cancelled_due_to_relist", bid_ids=bid_ids)
            relisted = await store.listing_insert(
                ListingData(
                    seller_id=original.data.seller_id,
                    title=original.data.title,
                    listing_type=original.data.listing_type,
                    price=original.data.price,
                    expires_at=now + duration,
                    relisted_from_id=listing_id,
                    relist_reason=reason,
                ),
                key=new_id,
            )
        except Exception:
            logger.error(f"Relist of {listing_id} failed, rolling back", exc_info=True)
            await _relist_rollback(original, previous, bid_ids, new_id)
            raise

    logger.info(f"Listing {listing_id} relisted as {new_id}, {len(bid_ids)} bids cancelled")
    change_publish("listings", "UPDATE", listing_id)
    change_publish("listings", "INSERT", new_id)
    if bid_ids:
        change_publish("bids", "UPDATE", listing_id)

    for user_id in dict.fromkeys(bid.data.user_id for bid in active_bids):
        await notify_listing_relisted(user_id, listing_id, original.data.title, new_id, reason)
    return relisted
