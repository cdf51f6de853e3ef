import logging
import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel

from models.entities.couchbase.bid_attempts import BidAttempt, BidAttemptData
from models.entities.couchbase.bids import Bid
from models.errors import BidError
from models.settings import get_auction_settings
from models.stores import get_store

logger = logging.getLogger(__name__)


class BidStatusView(BaseModel):
    """What the bid form needs to know about the caller's own bid."""
    listing_id: str
    user_id: str
    has_bid: bool
    is_highest_bidder: bool
    visible_amount: Optional[float] = None
    maximum_bid: Optional[float] = None


async def bid_get_by_listing(listing_id: str, limit: int = 100) -> List[Bid]:
    return await get_store().bid_find_by_listing(listing_id, limit=limit)


async def bid_get_by_bidder(user_id: str, limit: int = 50) -> List[Bid]:
    return await get_store().bid_find_by_user(user_id, limit=limit)


async def bid_get_user_status(listing_id: str, user_id: str) -> BidStatusView:
    store = get_store()
    bid = await store.bid_get_active(listing_id, user_id)
    if bid is None:
        return BidStatusView(listing_id=listing_id, user_id=user_id, has_bid=False, is_highest_bidder=False)

    listing = await store.listing_get(listing_id)
    leading = listing is not None and listing.data.highest_bidder_id == user_id
    return BidStatusView(
        listing_id=listing_id,
        user_id=user_id,
        has_bid=True,
        is_highest_bidder=leading,
        visible_amount=bid.data.amount,
        maximum_bid=bid.data.maximum_bid,
    )


# ---------------------------------------------------------------------------
# Bid attempt logs
# ---------------------------------------------------------------------------

async def bid_attempt_record(
    listing_id: str,
    user_id: str,
    maximum_bid: float,
    error: BidError,
    now: Optional[datetime] = None,
) -> Optional[BidAttempt]:
    """Log a rejected submission. Never raises."""
    try:
        data = BidAttemptData(
            listing_id=listing_id,
            user_id=user_id,
            maximum_bid=maximum_bid if math.isfinite(maximum_bid) else 0.0,
            failure_code=error.code,
            failure_reason=error.message,
            attempted_at=now or datetime.now(timezone.utc),
        )
        return await get_store().bid_attempt_insert(data)
    except Exception as e:
        logger.warning(f"Failed to log bid attempt on {listing_id} by {user_id}: {e}")
        return None


async def bid_attempt_purge(older_than: Optional[timedelta] = None, now: Optional[datetime] = None) -> int:
    """Delete bid attempt logs older than the retention window. Returns how many were removed."""
    if older_than is None:
        older_than = timedelta(days=get_auction_settings().bid_attempt_retention_days)
    cutoff = (now or datetime.now(timezone.utc)) - older_than
    removed = await get_store().bid_attempt_delete_before(cutoff)
    logger.info(f"Purged {removed} bid attempt logs older than {cutoff.isoformat()}")
    return removed


async def bid_attempt_summary(since: datetime) -> Dict[str, int]:
    """Failed attempts per failure code since *since*."""
    attempts = await get_store().bid_attempt_find_since(since)
    return dict(Counter(a.data.failure_code for a in attempts))
