"""
Storage boundary for the auction core.

Implementations hold no business logic: they read and write listings, bid
rows, the notification outbox and bid-attempt logs. Replacements are guarded
by the CAS value read with the document and raise ``ConcurrencyConflict``
when another writer got there first.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

from models.entities.couchbase.bid_attempts import BidAttempt, BidAttemptData
from models.entities.couchbase.bids import Bid, BidData, BidStatus
from models.entities.couchbase.listings import Listing, ListingData
from models.entities.couchbase.notifications import Notification, NotificationData


def bid_rank_key(bid: Bid):
    """Highest maximum first; earlier bid wins ties."""
    return (-bid.data.maximum_bid, bid.data.created_at)


class AuctionStore(ABC):

    # -- listings ----------------------------------------------------------

    @abstractmethod
    async def listing_get(self, listing_id: str) -> Optional[Listing]:
        ...

    @abstractmethod
    async def listing_insert(self, data: ListingData, key: Optional[str] = None) -> Listing:
        """Insert a listing under *key* (generated when omitted)."""

    @abstractmethod
    async def listing_replace(self, listing: Listing) -> Listing:
        """CAS-guarded replace. Updates ``listing.cas`` on success."""

    @abstractmethod
    async def listing_find_expired_active(self, now: datetime, limit: int = 500) -> List[Listing]:
        """Active auctions whose ``expires_at`` is at or before *now*."""

    @abstractmethod
    async def listing_find_active_auctions(self, limit: int = 1000) -> List[Listing]:
        ...

    # -- bids (the ledger) -------------------------------------------------

    @abstractmethod
    async def bid_find_active(self, listing_id: str) -> List[Bid]:
        """Active bids ranked by ``maximum_bid`` desc, ``created_at`` asc."""

    @abstractmethod
    async def bid_get_active(self, listing_id: str, user_id: str) -> Optional[Bid]:
        ...

    @abstractmethod
    async def bid_insert(self, data: BidData) -> Bid:
        """Insert a bid row. Raises ``ConcurrencyConflict`` if the user already has one."""

    @abstractmethod
    async def bid_replace(self, bid: Bid) -> Bid:
        """CAS-guarded replace. Updates ``bid.cas`` on success."""

    @abstractmethod
    async def bid_transition(
        self,
        listing_id: str,
        to_status: BidStatus,
        bid_ids: Optional[Sequence[str]] = None,
        from_status: BidStatus = "active",
    ) -> int:
        """Move every *from_status* bid of a listing (or only *bid_ids*) to *to_status*.

        Returns the number of rows changed.
        """

    @abstractmethod
    async def bid_find_by_listing(self, listing_id: str, limit: int = 100) -> List[Bid]:
        """All bids for a listing, any status, ranked like ``bid_find_active``."""

    @abstractmethod
    async def bid_find_by_user(self, user_id: str, limit: int = 50) -> List[Bid]:
        """A user's bids, most recently updated first."""

    # -- notification outbox -----------------------------------------------

    @abstractmethod
    async def notification_insert(self, data: NotificationData) -> Notification:
        ...

    @abstractmethod
    async def notification_find_by_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        ...

    # -- bid attempt logs --------------------------------------------------

    @abstractmethod
    async def bid_attempt_insert(self, data: BidAttemptData) -> BidAttempt:
        ...

    @abstractmethod
    async def bid_attempt_find_since(self, since: datetime) -> List[BidAttempt]:
        ...

    @abstractmethod
    async def bid_attempt_delete_before(self, cutoff: datetime) -> int:
        ...
