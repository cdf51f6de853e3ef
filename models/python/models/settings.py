from typing import Optional

from pydantic import BaseModel, Field


class AuctionSettings(BaseModel):
    """Auction engine parameters, loaded once at service startup."""
    bid_increment: float = Field(default=5.0, gt=0)
    bid_timeout_seconds: float = Field(default=10.0, gt=0)
    max_conflict_retries: int = Field(default=3, ge=0)
    sweep_concurrency: int = Field(default=8, ge=1)
    relist_duration_days: int = Field(default=7, ge=1)
    bid_attempt_retention_days: int = Field(default=30, ge=1)
    notify_timeout_seconds: float = Field(default=5.0, gt=0)
    pending_write_lease_seconds: float = Field(default=30.0, gt=0)


_settings: Optional[AuctionSettings] = None


def get_auction_settings() -> AuctionSettings:
    global _settings
    if _settings is None:
        _settings = AuctionSettings()
    return _settings


def set_auction_settings(settings: AuctionSettings) -> None:
    global _settings
    _settings = settings
