"""
Auction API routes.

Endpoints:
  POST   /auctions/{id}/bids      — submit or raise a maximum bid
  GET    /auctions/{id}           — auction state
  GET    /auctions/{id}/bids      — bid history (visible amounts only)
  GET    /auctions/{id}/bids/me   — caller's own bid status
  POST   /auctions/{id}/relist    — relist (seller only)
  GET    /auctions/{id}/stream    — SSE change stream
"""

import asyncio
import json
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from models.entities.couchbase.listings import Listing
from models.errors import (
    BidError,
    BidTooLow,
    ConcurrencyConflict,
    ListingNotBiddable,
    MustIncreasePreviousMaximum,
    OperationTimeout,
    SelfBidForbidden,
    StorageUnavailable,
)
from models.operations.bidding import BidOutcome, bid_submit
from models.operations.bids import BidStatusView, bid_get_by_listing, bid_get_user_status
from models.operations.changes import get_change_feed
from models.operations.listings import listing_get, listing_relist
from models.settings import get_auction_settings
from utils import log

from .dependencies import require_user

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auctions", tags=["auctions"])

STREAM_KEEPALIVE_SECONDS = 15.0


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class PlaceBidRequest(BaseModel):
    maximum_bid: float


class RelistRequest(BaseModel):
    duration_days: Optional[int] = Field(default=None, ge=1, le=90)
    reason: Optional[str] = Field(default=None, max_length=500)


class AuctionResponse(BaseModel):
    id: str
    seller_id: str
    title: str
    listing_type: str
    price: float
    current_bid: Optional[float] = None
    highest_bidder_id: Optional[str] = None
    bid_count: int
    minimum_bid: Optional[float] = None
    expires_at: datetime
    status: str
    sale_buyer_id: Optional[str] = None
    sale_amount: Optional[float] = None
    sale_date: Optional[datetime] = None
    relisted_from_id: Optional[str] = None
    relisted_to_id: Optional[str] = None


class BidHistoryItem(BaseModel):
    id: str
    user_id: str
    amount: float
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def _auction_to_response(listing: Listing) -> AuctionResponse:
    d = listing.data
    minimum_bid = None
    if d.status == "active" and d.listing_type == "auction":
        if d.current_bid is None:
            minimum_bid = d.price
        else:
            minimum_bid = d.current_bid + get_auction_settings().bid_increment
    return AuctionResponse(
        id=listing.id,
        seller_id=d.seller_id,
        title=d.title,
        listing_type=d.listing_type,
        price=d.price,
        current_bid=d.current_bid,
        highest_bidder_id=d.highest_bidder_id,
        bid_count=d.bid_count,
        minimum_bid=minimum_bid,
        expires_at=d.expires_at,
        status=d.status,
        sale_buyer_id=d.sale_buyer_id,
        sale_amount=d.sale_amount,
        sale_date=d.sale_date,
        relisted_from_id=d.relisted_from_id,
        relisted_to_id=d.relisted_to_id,
    )


def _bid_error_status(err: BidError) -> int:
    if isinstance(err, ListingNotBiddable):
        return 404 if not err.listing_found else 409
    if isinstance(err, SelfBidForbidden):
        return 403
    if isinstance(err, (BidTooLow, MustIncreasePreviousMaximum)):
        return 400
    if isinstance(err, ConcurrencyConflict):
        return 409
    if isinstance(err, OperationTimeout):
        return 504
    if isinstance(err, StorageUnavailable):
        return 503
    return 400


def _bid_error_to_http(err: BidError) -> HTTPException:
    detail = {"code": err.code, "message": err.user_message}
    if isinstance(err, BidTooLow):
        detail["minimum_bid"] = err.minimum
    return HTTPException(status_code=_bid_error_status(err), detail=detail)


async def _require_listing(listing_id: str) -> Listing:
    listing = await listing_get(listing_id)
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    return listing


# ---------------------------------------------------------------------------
# POST /auctions/{id}/bids — submit a maximum bid
# ---------------------------------------------------------------------------

@router.post("/{listing_id}/bids", response_model=BidOutcome, status_code=201)
async def route_bid_submit(
    listing_id: str,
    body: PlaceBidRequest,
    user_id: str = Depends(require_user),
):
    """Submit a private maximum bid; the visible price moves by proxy rules."""
    outcome, err = await bid_submit(listing_id, user_id, body.maximum_bid)
    if err:
        raise _bid_error_to_http(err)
    return outcome


# ---------------------------------------------------------------------------
# GET /auctions/{id} — auction state
# ---------------------------------------------------------------------------

@router.get("/{listing_id}", response_model=AuctionResponse)
async def route_auction_detail(listing_id: str):
    return _auction_to_response(await _require_listing(listing_id))


# ---------------------------------------------------------------------------
# GET /auctions/{id}/bids — bid history
# ---------------------------------------------------------------------------

@router.get("/{listing_id}/bids", response_model=List[BidHistoryItem])
async def route_auction_bids(listing_id: str, limit: int = Query(default=100, ge=1, le=500)):
    """Bid history ranked like the ledger. Maximum bids stay private."""
    await _require_listing(listing_id)
    bids = await bid_get_by_listing(listing_id, limit=limit)
    return [
        BidHistoryItem(
            id=b.id,
            user_id=b.data.user_id,
            amount=b.data.amount,
            status=b.data.status,
            created_at=b.data.created_at,
            updated_at=b.data.updated_at,
        )
        for b in bids
    ]


# ---------------------------------------------------------------------------
# GET /auctions/{id}/bids/me — caller's bid status
# ---------------------------------------------------------------------------

@router.get("/{listing_id}/bids/me", response_model=BidStatusView)
async def route_auction_bid_status(listing_id: str, user_id: str = Depends(require_user)):
    await _require_listing(listing_id)
    return await bid_get_user_status(listing_id, user_id)


# ---------------------------------------------------------------------------
# POST /auctions/{id}/relist — relist (seller only)
# ---------------------------------------------------------------------------

@router.post("/{listing_id}/relist", response_model=AuctionResponse, status_code=201)
async def route_auction_relist(
    listing_id: str,
    body: RelistRequest,
    user_id: str = Depends(require_user),
):
    """Cancel all active bids and start a fresh auction with the same terms."""
    listing = await _require_listing(listing_id)
    if listing.data.seller_id != user_id:
        raise HTTPException(status_code=403, detail="Only the seller can relist this listing")

    duration = timedelta(days=body.duration_days) if body.duration_days else None
    try:
        relisted = await listing_relist(listing_id, user_id, duration=duration, reason=body.reason)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BidError as e:
        raise _bid_error_to_http(e)
    return _auction_to_response(relisted)


# ---------------------------------------------------------------------------
# GET /auctions/{id}/stream — SSE for live auction updates
# ---------------------------------------------------------------------------

def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@router.get("/{listing_id}/stream")
async def route_auction_stream(listing_id: str, request: Request):
    """Server-Sent Events stream for live auction updates.

    Emits the current state, then a fresh snapshot after every change event
    for the listing. Emits an ended event once the listing leaves active.
    """
    await _require_listing(listing_id)

    async def event_generator():
        with get_change_feed().subscribe(listing_id) as queue:
            while True:
                listing = await listing_get(listing_id)
                if not listing:
                    yield _sse("error", {"error": "Listing not found"})
                    break

                snapshot = _auction_to_response(listing).model_dump(mode="json")
                yield _sse("update", snapshot)
                if listing.data.status != "active":
                    yield _sse("ended", {
                        "status": listing.data.status,
                        "sale_buyer_id": listing.data.sale_buyer_id,
                        "sale_amount": listing.data.sale_amount,
                        "relisted_to_id": listing.data.relisted_to_id,
                    })
                    break

                # Wait for the next change; events only mean "refresh"
                while True:
                    if await request.is_disconnected():
                        return
                    try:
                        await asyncio.wait_for(queue.get(), STREAM_KEEPALIVE_SECONDS)
                        break
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                while not queue.empty():
                    queue.get_nowait()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
