"""
Typed outcomes of bid submission and the storage boundary.

Validation errors are returned by ``bid_submit`` as the error half of its
``(outcome, error)`` tuple. Stores raise the transient ones.
"""

from typing import Optional


class BidError(Exception):
    """Base class for every bid submission failure."""

    code: str = "bid_error"
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def user_message(self) -> str:
        """Message safe to show the bidder."""
        if self.retryable:
            return "Something went wrong placing your bid, please try again"
        return self.message


class ListingNotBiddable(BidError):
    """Listing missing, not an auction, not active, or past its deadline."""
    code = "listing_not_biddable"

    def __init__(self, message: str, listing_found: bool = True):
        super().__init__(message)
        self.listing_found = listing_found


class SelfBidForbidden(BidError):
    code = "self_bid_forbidden"


class BidTooLow(BidError):
    code = "bid_too_low"

    def __init__(self, minimum: float, message: Optional[str] = None):
        super().__init__(message or f"Bid must be at least {minimum:.2f}")
        self.minimum = minimum


class MustIncreasePreviousMaximum(BidError):
    code = "must_increase_previous_maximum"

    def __init__(self, previous_maximum: float):
        super().__init__(
            f"Your new maximum bid must be higher than your current maximum of {previous_maximum:.2f}"
        )
        self.previous_maximum = previous_maximum


class ConcurrencyConflict(BidError):
    """A concurrent writer changed the listing or bid between read and write."""
    code = "concurrency_conflict"
    retryable = True


class OperationTimeout(BidError):
    """Storage or the per-listing lock did not respond in time. Safe to retry."""
    code = "timeout"
    retryable = True


class StorageUnavailable(BidError):
    """Storage is unreachable. Not retried by the core."""
    code = "storage_unavailable"

    @property
    def user_message(self) -> str:
        return "The auction service is temporarily unavailable, please try again later"
