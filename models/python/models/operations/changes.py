"""
In-process realtime change feed.

Every listing or bid mutation publishes a ``ChangeEvent`` for the listing.
Subscribers (the SSE stream) get their own bounded queue per listing; a slow
subscriber drops events rather than blocking the publisher, which is safe
because every event only means "refresh this listing".
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Literal, Set

from models.entities.events import ChangeEvent

logger = logging.getLogger(__name__)


class ChangeFeed:

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscriber_count(self, listing_id: str) -> int:
        return len(self._subscribers.get(listing_id, ()))

    def publish(self, event: ChangeEvent) -> int:
        """Fan *event* out to the listing's subscribers. Returns how many received it."""
        delivered = 0
        for queue in list(self._subscribers.get(event.listing_id, ())):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Change feed subscriber for {event.listing_id} is full, dropping event")
        return delivered

    @contextmanager
    def subscribe(self, listing_id: str) -> Iterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(listing_id, set()).add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(listing_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[listing_id]


_feed = ChangeFeed()


def get_change_feed() -> ChangeFeed:
    return _feed


def change_publish(
    table: Literal["listings", "bids"],
    event_type: Literal["INSERT", "UPDATE"],
    listing_id: str,
) -> None:
    """Publish a change event; never raises into the caller's operation."""
    try:
        _feed.publish(ChangeEvent(table=table, event_type=event_type, listing_id=listing_id))
    except Exception as e:
        logger.warning(f"Failed to publish {table} {event_type} for {listing_id}: {e}")
