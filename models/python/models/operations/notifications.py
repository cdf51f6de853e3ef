"""
Notification outbox.

The auction core only enqueues typed notification rows; delivery (in-app,
email, push) belongs to another service. Enqueueing happens after the owning
operation has committed and never fails it: errors and timeouts are logged.
"""

import asyncio
import logging
from typing import List, Optional

from models.entities.couchbase.notifications import (
    AuctionEndedNoBidsMetadata,
    AuctionSoldMetadata,
    AuctionWonMetadata,
    ListingRelistedMetadata,
    NewBidMetadata,
    Notification,
    NotificationData,
    NotificationMetadata,
    OutbidMetadata,
)
from models.settings import get_auction_settings
from models.stores import get_store

logger = logging.getLogger(__name__)


def format_amount(amount: float) -> str:
    return f"£{amount:,.2f}"


async def notification_enqueue(
    user_id: str, message: str, metadata: NotificationMetadata
) -> Optional[Notification]:
    """Queue a notification. Returns None if it could not be stored."""
    try:
        data = NotificationData(
            user_id=user_id,
            type=metadata.type,
            message=message,
            metadata=metadata,
        )
        timeout = get_auction_settings().notify_timeout_seconds
        return await asyncio.wait_for(get_store().notification_insert(data), timeout)
    except Exception as e:
        logger.warning(f"Failed to queue {metadata.type} notification for {user_id}: {e}")
        return None


async def notification_get_by_user(user_id: str, limit: int = 50) -> List[Notification]:
    return await get_store().notification_find_by_user(user_id, limit=limit)


# ---------------------------------------------------------------------------
# Typed constructors, one per notification type
# ---------------------------------------------------------------------------

async def notify_outbid(user_id: str, listing_id: str, title: str, amount: float, new_leader_id: str):
    return await notification_enqueue(
        user_id,
        f'You have been outbid on "{title}". The current bid is now {format_amount(amount)}.',
        OutbidMetadata(listing_id=listing_id, amount=amount, new_leader_id=new_leader_id),
    )


async def notify_new_bid(seller_id: str, listing_id: str, title: str, amount: float, bidder_id: str):
    return await notification_enqueue(
        seller_id,
        f'New bid on your listing "{title}". The current bid is {format_amount(amount)}.',
        NewBidMetadata(listing_id=listing_id, amount=amount, bidder_id=bidder_id),
    )


async def notify_auction_won(winner_id: str, listing_id: str, title: str, amount: float, seller_id: str):
    return await notification_enqueue(
        winner_id,
        f'Congratulations! You won "{title}" for {format_amount(amount)}.',
        AuctionWonMetadata(listing_id=listing_id, amount=amount, seller_id=seller_id),
    )


async def notify_auction_sold(seller_id: str, listing_id: str, title: str, amount: float, buyer_id: str):
    return await notification_enqueue(
        seller_id,
        f'Your auction "{title}" was won for {format_amount(amount)}.',
        AuctionSoldMetadata(listing_id=listing_id, amount=amount, buyer_id=buyer_id),
    )


async def notify_auction_ended_no_bids(seller_id: str, listing_id: str, title: str):
    return await notification_enqueue(
        seller_id,
        f'Auction ended for "{title}" with no bids.',
        AuctionEndedNoBidsMetadata(listing_id=listing_id),
    )


async def notify_listing_relisted(
    user_id: str, listing_id: str, title: str, new_listing_id: str, reason: Optional[str]
):
    message = f'The auction "{title}" you bid on has been relisted and your bid was cancelled.'
    if reason:
        message += f" The reason provided is: {reason}"
    return await notification_enqueue(
        user_id,
        message,
        ListingRelistedMetadata(listing_id=listing_id, new_listing_id=new_listing_id, reason=reason),
    )
