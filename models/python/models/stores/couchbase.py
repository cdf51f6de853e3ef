"""
AuctionStore backed by Couchbase collections.

Follows the query conventions of the entity operations modules:
``SELECT META().id, * FROM <keyspace>`` with named parameters, rows unpacked
by collection name. Reads that decide settlement or relisting use
REQUEST_PLUS consistency so a freshly written listing is never missed.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from couchbase.exceptions import (
    AmbiguousTimeoutException,
    CASMismatchException,
    CouchbaseException,
    DocumentExistsException,
    DocumentNotFoundException,
    UnAmbiguousTimeoutException,
)

from models.entities.couchbase.bid_attempts import BidAttempt, BidAttemptData
from models.entities.couchbase.bids import Bid, BidData, BidStatus
from models.entities.couchbase.listings import Listing, ListingData
from models.entities.couchbase.notifications import Notification, NotificationData
from models.errors import ConcurrencyConflict, OperationTimeout, StorageUnavailable

from .base import AuctionStore, bid_rank_key

logger = logging.getLogger(__name__)


def _millis(moment: datetime) -> int:
    """Epoch milliseconds, compared against STR_TO_MILLIS of stored ISO timestamps."""
    return int(moment.timestamp() * 1000)


@contextmanager
def _storage_errors(what: str):
    """Translate SDK exceptions into the auction error taxonomy."""
    try:
        yield
    except (CASMismatchException, DocumentExistsException, DocumentNotFoundException) as e:
        raise ConcurrencyConflict(f"Concurrent update while {what}") from e
    except (AmbiguousTimeoutException, UnAmbiguousTimeoutException) as e:
        raise OperationTimeout(f"Couchbase timed out while {what}") from e
    except CouchbaseException as e:
        logger.error(f"Couchbase error while {what}: {e}")
        raise StorageUnavailable(f"Storage unavailable while {what}") from e


class CouchbaseAuctionStore(AuctionStore):

    # ------------------------------------------------------------------
    # listings
    # ------------------------------------------------------------------

    async def listing_get(self, listing_id: str) -> Optional[Listing]:
        with _storage_errors(f"reading listing {listing_id}"):
            return await Listing.get(listing_id)

    async def listing_insert(self, data: ListingData, key: Optional[str] = None) -> Listing:
        with _storage_errors("creating listing"):
            return await Listing.create(data, key=key, user_id=data.seller_id)

    async def listing_replace(self, listing: Listing) -> Listing:
        with _storage_errors(f"updating listing {listing.id}"):
            return await Listing.update(listing)

    async def listing_find_expired_active(self, now: datetime, limit: int = 500) -> List[Listing]:
        keyspace = Listing.get_keyspace()
        query = (
            f"SELECT META().id, * FROM {keyspace} "
            f"WHERE listing_type = 'auction' AND status = 'active' "
            f"AND STR_TO_MILLIS(expires_at) <= $now_ms "
            f"ORDER BY expires_at ASC "
            f"LIMIT {int(limit)}"
        )
        with _storage_errors("finding expired auctions"):
            rows = await keyspace.query(query, consistent=True, now_ms=_millis(now))
        return [
            Listing(id=row["id"], data=row.get("listings"))
            for row in rows if row.get("listings")
        ]

    async def listing_find_active_auctions(self, limit: int = 1000) -> List[Listing]:
        keyspace = Listing.get_keyspace()
        query = (
            f"SELECT META().id, * FROM {keyspace} "
            f"WHERE listing_type = 'auction' AND status = 'active' "
            f"ORDER BY expires_at ASC "
            f"LIMIT {int(limit)}"
        )
        with _storage_errors("finding active auctions"):
            rows = await keyspace.query(query)
        return [
            Listing(id=row["id"], data=row.get("listings"))
            for row in rows if row.get("listings")
        ]

    # ------------------------------------------------------------------
    # bids
    # ------------------------------------------------------------------

    async def bid_find_active(self, listing_id: str) -> List[Bid]:
        keyspace = Bid.get_keyspace()
        query = (
            f"SELECT META().id, META().cas, * FROM {keyspace} "
            f"WHERE listing_id = $listing_id AND status = 'active' "
            f"ORDER BY maximum_bid DESC, created_at ASC"
        )
        with _storage_errors(f"reading bids for listing {listing_id}"):
            rows = await keyspace.query(query, consistent=True, listing_id=listing_id)
        bids = [
            Bid(id=row["id"], data=row.get("bids"), cas=row.get("cas"))
            for row in rows if row.get("bids")
        ]
        # created_at ties need sub-millisecond precision, so rank client-side too
        return sorted(bids, key=bid_rank_key)

    async def bid_get_active(self, listing_id: str, user_id: str) -> Optional[Bid]:
        with _storage_errors(f"reading bid of {user_id} on {listing_id}"):
            bid = await Bid.get(Bid.key_for(listing_id, user_id))
        if bid and bid.data.status == "active":
            return bid
        return None

    async def bid_insert(self, data: BidData) -> Bid:
        key = Bid.key_for(data.listing_id, data.user_id)
        with _storage_errors(f"inserting bid {key}"):
            return await Bid.create(data, key=key, user_id=data.user_id)

    async def bid_replace(self, bid: Bid) -> Bid:
        with _storage_errors(f"updating bid {bid.id}"):
            return await Bid.update(bid)

    async def bid_transition(
        self,
        listing_id: str,
        to_status: BidStatus,
        bid_ids: Optional[Sequence[str]] = None,
        from_status: BidStatus = "active",
    ) -> int:
        keyspace = Bid.get_keyspace()
        params = {
            "listing_id": listing_id,
            "to_status": to_status,
            "from_status": from_status,
            "now": datetime.now(timezone.utc).isoformat(),
        }
        id_clause = ""
        if bid_ids is not None:
            id_clause = "AND META().id IN $bid_ids "
            params["bid_ids"] = list(bid_ids)
        query = (
            f"UPDATE {keyspace} "
            f"SET status = $to_status, updated_at = $now "
            f"WHERE listing_id = $listing_id AND status = $from_status "
            f"{id_clause}"
            f"RETURNING META().id"
        )
        with _storage_errors(f"moving bids on {listing_id} to {to_status}"):
            rows = await keyspace.query(query, consistent=True, **params)
        return len(rows)

    async def bid_find_by_listing(self, listing_id: str, limit: int = 100) -> List[Bid]:
        keyspace = Bid.get_keyspace()
        query = (
            f"SELECT META().id, * FROM {keyspace} "
            f"WHERE listing_id = $listing_id "
            f"ORDER BY maximum_bid DESC, created_at ASC "
            f"LIMIT {int(limit)}"
        )
        with _storage_errors(f"reading bid history for {listing_id}"):
            rows = await keyspace.query(query, listing_id=listing_id)
        bids = [
            Bid(id=row["id"], data=row.get("bids"))
            for row in rows if row.get("bids")
        ]
        return sorted(bids, key=bid_rank_key)

    async def bid_find_by_user(self, user_id: str, limit: int = 50) -> List[Bid]:
        keyspace = Bid.get_keyspace()
        query = (
            f"SELECT META().id, * FROM {keyspace} "
            f"WHERE user_id = $user_id "
            f"ORDER BY updated_at DESC "
            f"LIMIT {int(limit)}"
        )
        with _storage_errors(f"reading bids of {user_id}"):
            rows = await keyspace.query(query, user_id=user_id)
        return [
            Bid(id=row["id"], data=row.get("bids"))
            for row in rows if row.get("bids")
        ]

    # ------------------------------------------------------------------
    # notification outbox
    # ------------------------------------------------------------------

    async def notification_insert(self, data: NotificationData) -> Notification:
        with _storage_errors(f"queueing {data.type} notification"):
            return await Notification.create(data)

    async def notification_find_by_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        keyspace = Notification.get_keyspace()
        query = (
            f"SELECT META().id, * FROM {keyspace} "
            f"WHERE user_id = $user_id "
            f"ORDER BY created_at DESC "
            f"LIMIT {int(limit)}"
        )
        with _storage_errors(f"reading notifications of {user_id}"):
            rows = await keyspace.query(query, user_id=user_id)
        return [
            Notification(id=row["id"], data=row.get("notifications"))
            for row in rows if row.get("notifications")
        ]

    # ------------------------------------------------------------------
    # bid attempt logs
    # ------------------------------------------------------------------

    async def bid_attempt_insert(self, data: BidAttemptData) -> BidAttempt:
        with _storage_errors("logging bid attempt"):
            return await BidAttempt.create(data)

    async def bid_attempt_find_since(self, since: datetime) -> List[BidAttempt]:
        keyspace = BidAttempt.get_keyspace()
        query = (
            f"SELECT META().id, * FROM {keyspace} "
            f"WHERE STR_TO_MILLIS(attempted_at) >= $since_ms "
            f"ORDER BY attempted_at DESC"
        )
        with _storage_errors("reading bid attempts"):
            rows = await keyspace.query(query, since_ms=_millis(since))
        return [
            BidAttempt(id=row["id"], data=row.get("bid_attempts"))
            for row in rows if row.get("bid_attempts")
        ]

    async def bid_attempt_delete_before(self, cutoff: datetime) -> int:
        keyspace = BidAttempt.get_keyspace()
        query = (
            f"DELETE FROM {keyspace} "
            f"WHERE STR_TO_MILLIS(attempted_at) < $cutoff_ms "
            f"RETURNING META().id"
        )
        with _storage_errors("purging bid attempts"):
            rows = await keyspace.query(query, cutoff_ms=_millis(cutoff))
        return len(rows)
