from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class OutbidMetadata(BaseModel):
    type: Literal["outbid"] = "outbid"
    listing_id: str
    amount: float
    new_leader_id: str


class NewBidMetadata(BaseModel):
    type: Literal["new_bid"] = "new_bid"
    listing_id: str
    amount: float
    bidder_id: str


class AuctionWonMetadata(BaseModel):
    type: Literal["auction_won"] = "auction_won"
    listing_id: str
    amount: float
    seller_id: str


class AuctionSoldMetadata(BaseModel):
    type: Literal["auction_sold"] = "auction_sold"
    listing_id: str
    amount: float
    buyer_id: str


class AuctionEndedNoBidsMetadata(BaseModel):
    type: Literal["auction_ended_no_bids"] = "auction_ended_no_bids"
    listing_id: str


class ListingRelistedMetadata(BaseModel):
    type: Literal["listing_relisted"] = "listing_relisted"
    listing_id: str
    new_listing_id: str
    reason: Optional[str] = None


NotificationMetadata = Annotated[
    Union[
        OutbidMetadata,
        NewBidMetadata,
        AuctionWonMetadata,
        AuctionSoldMetadata,
        AuctionEndedNoBidsMetadata,
        ListingRelistedMetadata,
    ],
    Field(discriminator="type"),
]

NotificationType = Literal[
    "outbid",
    "new_bid",
    "auction_won",
    "auction_sold",
    "auction_ended_no_bids",
    "listing_relisted",
]


class NotificationData(BaseCouchbaseEntityData):
    user_id: str
    type: NotificationType
    message: str
    metadata: NotificationMetadata
    is_read: bool = False

    @model_validator(mode="after")
    def _type_matches_metadata(self):
        if self.metadata.type != self.type:
            raise ValueError(
                f"Notification type {self.type!r} does not match metadata type {self.metadata.type!r}"
            )
        return self


class Notification(BaseModelCouchbase[NotificationData]):
    _collection_name = "notifications"
