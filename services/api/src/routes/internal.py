"""
Internal operations endpoints for the scheduler host and operators.
Secured with INTERNAL_API_KEY, not exposed publicly.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from models.operations.bids import bid_attempt_summary
from models.operations.listings import auction_audit_active
from models.operations.settlement import SettlementReport, auction_sweep_expired
from utils import log

from .dependencies import require_internal_api_key

logger = log.get_logger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(require_internal_api_key)],
)


class AuditResponse(BaseModel):
    repaired: List[str]


class BidAttemptSummaryResponse(BaseModel):
    since: datetime
    total: int
    by_failure_code: Dict[str, int]


@router.post("/auctions/sweep", response_model=SettlementReport)
async def route_sweep_expired_auctions():
    """Settle expired auctions now. Idempotent; safe to call alongside the scheduler."""
    report = await auction_sweep_expired()
    logger.info(f"On-demand sweep settled {len(report.sold) + len(report.expired)} auctions")
    return report


@router.post("/auctions/audit", response_model=AuditResponse)
async def route_audit_active_auctions():
    return AuditResponse(repaired=await auction_audit_active())


@router.get("/bid-attempts/summary", response_model=BidAttemptSummaryResponse)
async def route_bid_attempt_summary(hours: int = Query(default=24, ge=1, le=24 * 30)):
    """Rejected bid submissions per failure code over the last *hours*."""
    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    counts = await bid_attempt_summary(since)
    return BidAttemptSummaryResponse(since=since, total=sum(counts.values()), by_failure_code=counts)
