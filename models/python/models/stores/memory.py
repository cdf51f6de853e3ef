"""
Dict-backed AuctionStore with Couchbase-like CAS semantics.

Every method body runs without awaiting, so each call is atomic on the event
loop. Documents are copied on the way in and out: callers only see their
changes persisted through an explicit insert or replace.
"""

import itertools
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from models.entities.couchbase.bid_attempts import BidAttempt, BidAttemptData
from models.entities.couchbase.bids import Bid, BidData, BidStatus
from models.entities.couchbase.listings import Listing, ListingData
from models.entities.couchbase.notifications import Notification, NotificationData
from models.errors import ConcurrencyConflict

from .base import AuctionStore, bid_rank_key


class InMemoryAuctionStore(AuctionStore):

    def __init__(self) -> None:
        self._cas = itertools.count(1)
        self.listings: Dict[str, Tuple[ListingData, int]] = {}
        self.bids: Dict[str, Tuple[BidData, int]] = {}
        self.notifications: Dict[str, NotificationData] = {}
        self.bid_attempts: Dict[str, BidAttemptData] = {}
        self.writes = 0

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _stamp(data, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

    def _listing(self, key: str) -> Listing:
        data, cas = self.listings[key]
        return Listing(id=key, data=data.model_copy(deep=True), cas=cas)

    def _bid(self, key: str) -> Bid:
        data, cas = self.bids[key]
        return Bid(id=key, data=data.model_copy(deep=True), cas=cas)

    # ------------------------------------------------------------------
    # listings
    # ------------------------------------------------------------------

    async def listing_get(self, listing_id: str) -> Optional[Listing]:
        if listing_id not in self.listings:
            return None
        return self._listing(listing_id)

    async def listing_insert(self, data: ListingData, key: Optional[str] = None) -> Listing:
        key = key or str(uuid.uuid4())
        if key in self.listings:
            raise ConcurrencyConflict(f"Listing {key} already exists")
        self._stamp(data)
        self.listings[key] = (data.model_copy(deep=True), next(self._cas))
        self.writes += 1
        return self._listing(key)

    async def listing_replace(self, listing: Listing) -> Listing:
        current = self.listings.get(listing.id)
        if current is None:
            raise ConcurrencyConflict(f"Listing {listing.id} no longer exists")
        if listing.cas and current[1] != listing.cas:
            raise ConcurrencyConflict(f"Listing {listing.id} was modified concurrently")
        listing.data.updated_at = datetime.now(timezone.utc)
        cas = next(self._cas)
        self.listings[listing.id] = (listing.data.model_copy(deep=True), cas)
        listing.cas = cas
        self.writes += 1
        return listing

    async def listing_find_expired_active(self, now: datetime, limit: int = 500) -> List[Listing]:
        keys = [
            key for key, (data, _) in self.listings.items()
            if data.listing_type == "auction"
            and data.status == "active"
            and data.expires_at <= now
        ]
        keys.sort(key=lambda k: self.listings[k][0].expires_at)
        return [self._listing(k) for k in keys[:limit]]

    async def listing_find_active_auctions(self, limit: int = 1000) -> List[Listing]:
        keys = [
            key for key, (data, _) in self.listings.items()
            if data.listing_type == "auction" and data.status == "active"
        ]
        return [self._listing(k) for k in keys[:limit]]

    # ------------------------------------------------------------------
    # bids
    # ------------------------------------------------------------------

    async def bid_find_active(self, listing_id: str) -> List[Bid]:
        bids = [
            self._bid(key) for key, (data, _) in self.bids.items()
            if data.listing_id == listing_id and data.status == "active"
        ]
        return sorted(bids, key=bid_rank_key)

    async def bid_get_active(self, listing_id: str, user_id: str) -> Optional[Bid]:
        key = Bid.key_for(listing_id, user_id)
        if key in self.bids and self.bids[key][0].status == "active":
            return self._bid(key)
        return None

    async def bid_insert(self, data: BidData) -> Bid:
        key = Bid.key_for(data.listing_id, data.user_id)
        if key in self.bids:
            raise ConcurrencyConflict(
                f"User {data.user_id} already has a bid on listing {data.listing_id}"
            )
        self._stamp(data)
        self.bids[key] = (data.model_copy(deep=True), next(self._cas))
        self.writes += 1
        return self._bid(key)

    async def bid_replace(self, bid: Bid) -> Bid:
        current = self.bids.get(bid.id)
        if current is None:
            raise ConcurrencyConflict(f"Bid {bid.id} no longer exists")
        if bid.cas and current[1] != bid.cas:
            raise ConcurrencyConflict(f"Bid {bid.id} was modified concurrently")
        bid.data.updated_at = datetime.now(timezone.utc)
        cas = next(self._cas)
        self.bids[bid.id] = (bid.data.model_copy(deep=True), cas)
        bid.cas = cas
        self.writes += 1
        return bid

    async def bid_transition(
        self,
        listing_id: str,
        to_status: BidStatus,
        bid_ids: Optional[Sequence[str]] = None,
        from_status: BidStatus = "active",
    ) -> int:
        now = datetime.now(timezone.utc)
        changed = 0
        for key, (data, _) in list(self.bids.items()):
            if data.listing_id != listing_id or data.status != from_status:
                continue
            if bid_ids is not None and key not in bid_ids:
                continue
            updated = data.model_copy(update={"status": to_status, "updated_at": now})
            self.bids[key] = (updated, next(self._cas))
            changed += 1
        self.writes += changed
        return changed

    async def bid_find_by_listing(self, listing_id: str, limit: int = 100) -> List[Bid]:
        bids = [
            self._bid(key) for key, (data, _) in self.bids.items()
            if data.listing_id == listing_id
        ]
        return sorted(bids, key=bid_rank_key)[:limit]

    async def bid_find_by_user(self, user_id: str, limit: int = 50) -> List[Bid]:
        bids = [
            self._bid(key) for key, (data, _) in self.bids.items()
            if data.user_id == user_id
        ]
        bids.sort(key=lambda b: b.data.updated_at, reverse=True)
        return bids[:limit]

    # ------------------------------------------------------------------
    # notification outbox
    # ------------------------------------------------------------------

    async def notification_insert(self, data: NotificationData) -> Notification:
        key = str(uuid.uuid4())
        self._stamp(data)
        self.notifications[key] = data.model_copy(deep=True)
        return Notification(id=key, data=data)

    async def notification_find_by_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        items = [
            Notification(id=key, data=data.model_copy(deep=True))
            for key, data in self.notifications.items()
            if data.user_id == user_id
        ]
        items.sort(key=lambda n: n.data.created_at, reverse=True)
        return items[:limit]

    # ------------------------------------------------------------------
    # bid attempt logs
    # ------------------------------------------------------------------

    async def bid_attempt_insert(self, data: BidAttemptData) -> BidAttempt:
        key = str(uuid.uuid4())
        self._stamp(data)
        self.bid_attempts[key] = data.model_copy(deep=True)
        return BidAttempt(id=key, data=data)

    async def bid_attempt_find_since(self, since: datetime) -> List[BidAttempt]:
        items = [
            BidAttempt(id=key, data=data.model_copy(deep=True))
            for key, data in self.bid_attempts.items()
            if data.attempted_at >= since
        ]
        items.sort(key=lambda a: a.data.attempted_at, reverse=True)
        return items

    async def bid_attempt_delete_before(self, cutoff: datetime) -> int:
        stale = [key for key, data in self.bid_attempts.items() if data.attempted_at < cutoff]
        for key in stale:
            del self.bid_attempts[key]
        return len(stale)
