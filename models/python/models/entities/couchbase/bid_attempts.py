from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class BidAttemptData(BaseCouchbaseEntityData):
    """A rejected bid submission, kept for monitoring and audits."""
    listing_id: str
    user_id: str
    maximum_bid: float
    failure_code: str
    failure_reason: str
    attempted_at: datetime


class BidAttempt(BaseModelCouchbase[BidAttemptData]):
    _collection_name = "bid_attempts"
