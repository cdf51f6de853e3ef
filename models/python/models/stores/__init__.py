from typing import Optional

from .base import AuctionStore, bid_rank_key
from .memory import InMemoryAuctionStore

# Process-wide store, chosen at startup
_store: Optional[AuctionStore] = None


def get_store() -> AuctionStore:
    if _store is None:
        raise RuntimeError("Auction store not configured; call set_store() at startup")
    return _store


def set_store(store: Optional[AuctionStore]) -> None:
    global _store
    _store = store


__all__ = [
    "AuctionStore",
    "InMemoryAuctionStore",
    "bid_rank_key",
    "get_store",
    "set_store",
]
