from typing import Literal

from pydantic import BaseModel


class ChangeEvent(BaseModel):
    """Published after every listing or bid mutation so live views can refresh."""
    table: Literal["listings", "bids"]
    event_type: Literal["INSERT", "UPDATE"]
    listing_id: str
