"""
Per-listing mutual exclusion for read-modify-write sequences.

Bid submission, settlement, relisting and cache reconciliation all hold the
listing's lock from the first read of bid state until the last write. Locks
are created on demand and dropped once nobody holds or waits for them.
Across processes the listing document serializes writers: every write is a
CAS replace, and a bid submission marks the listing pending until its bid
rows are written.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from models.errors import OperationTimeout


class ListingLocks:

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, listing_id: str) -> asyncio.Lock:
        lock = self._locks.get(listing_id)
        if lock is None:
            lock = self._locks[listing_id] = asyncio.Lock()
        self._users[listing_id] = self._users.get(listing_id, 0) + 1
        return lock

    def _checkin(self, listing_id: str) -> None:
        self._users[listing_id] -= 1
        if self._users[listing_id] == 0:
            del self._users[listing_id]
            del self._locks[listing_id]

    @asynccontextmanager
    async def hold(self, listing_id: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        lock = self._checkout(listing_id)
        try:
            if timeout is None:
                await lock.acquire()
            else:
                await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError:
            self._checkin(listing_id)
            raise OperationTimeout(f"Timed out waiting for listing {listing_id}")
        except BaseException:
            self._checkin(listing_id)
            raise

        try:
            yield
        finally:
            lock.release()
            self._checkin(listing_id)


_locks = ListingLocks()


def listing_lock(listing_id: str, timeout: Optional[float] = None):
    """``async with listing_lock(listing_id):`` serializes work on one listing."""
    return _locks.hold(listing_id, timeout)
