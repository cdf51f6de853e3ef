from typing import Optional, Literal
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


ListingStatus = Literal["active", "sold", "expired", "relisted"]

TERMINAL_LISTING_STATUSES = ("sold", "expired", "relisted")


class ListingData(BaseCouchbaseEntityData):
    # Ownership
    seller_id: str
    title: str = ""
    listing_type: Literal["auction", "fixed_price"] = "auction"

    # Starting price, immutable after creation
    price: float

    # Denormalized leader cache, written in lockstep with the bid rows
    current_bid: Optional[float] = None
    highest_bidder_id: Optional[str] = None
    bid_count: int = 0

    # Set by a bid submission between its listing write and its bid-row writes
    pending_write_id: Optional[str] = None
    pending_write_at: Optional[datetime] = None

    # Schedule (immutable; relisting creates a new listing)
    expires_at: datetime

    status: ListingStatus = "active"

    # Settlement
    sale_buyer_id: Optional[str] = None
    sale_amount: Optional[float] = None
    sale_date: Optional[datetime] = None

    # Relist audit trail
    relisted_from_id: Optional[str] = None
    relisted_to_id: Optional[str] = None
    relist_reason: Optional[str] = None


class Listing(BaseModelCouchbase[ListingData]):
    _collection_name = "listings"
