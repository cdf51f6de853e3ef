from typing import Literal
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


BidStatus = Literal["active", "won", "lost", "cancelled_due_to_relist"]


class BidData(BaseCouchbaseEntityData):
    listing_id: str
    user_id: str
    amount: float  # visible contribution, never above maximum_bid
    maximum_bid: float  # private ceiling, strictly increasing per bidder
    bid_increment: float
    status: BidStatus = "active"


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"

    @staticmethod
    def key_for(listing_id: str, user_id: str) -> str:
        """One bid document per (listing, user); re-bids replace it."""
        return f"{listing_id}::{user_id}"
