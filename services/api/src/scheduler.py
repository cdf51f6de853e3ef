"""APScheduler setup for auction settlement and housekeeping jobs."""

from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from models.operations.bids import bid_attempt_purge
from models.operations.listings import auction_audit_active
from models.operations.settlement import auction_sweep_expired
from utils import log

logger = log.get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


async def sweep_expired_auctions_job():
    """Settle every auction past its deadline."""
    try:
        report = await auction_sweep_expired()
    except Exception as e:
        logger.error(f"Auction sweep failed: {e}", exc_info=True)
        return
    if report.failures:
        logger.warning(f"Auction sweep left {len(report.failures)} listings unsettled: {list(report.failures)}")


async def audit_active_auctions_job():
    """Hourly repair of drifted leader caches on active auctions."""
    logger.info("Auction audit job starting...")
    try:
        repaired = await auction_audit_active()
        logger.info(f"Auction audit job finished, {len(repaired)} listings repaired")
    except Exception as e:
        logger.error(f"Auction audit job failed: {e}", exc_info=True)


async def purge_bid_attempts_job():
    """Daily deletion of bid attempt logs past the retention window."""
    try:
        await bid_attempt_purge()
    except Exception as e:
        logger.error(f"Bid attempt purge failed: {e}", exc_info=True)


def init_scheduler(sweep_interval_seconds: int = 60) -> AsyncIOScheduler:
    """Start the APScheduler with the settlement sweep and housekeeping jobs."""
    global _scheduler
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        sweep_expired_auctions_job,
        trigger=IntervalTrigger(seconds=sweep_interval_seconds),
        id="auction_settlement_sweep",
        name="Auction Settlement Sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    _scheduler.add_job(
        audit_active_auctions_job,
        trigger=CronTrigger(minute=0, timezone=ZoneInfo("UTC")),
        id="hourly_auction_audit",
        name="Hourly Auction Audit",
        max_instances=1,
        replace_existing=True,
    )
    _scheduler.add_job(
        purge_bid_attempts_job,
        trigger=CronTrigger(hour=3, minute=30, timezone=ZoneInfo("UTC")),
        id="daily_bid_attempt_purge",
        name="Daily Bid Attempt Purge",
        replace_existing=True,
    )
    _scheduler.start()
    logger.info(
        f"APScheduler started with settlement sweep (every {sweep_interval_seconds}s), "
        f"hourly audit and daily bid attempt purge (03:30 UTC)"
    )
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("APScheduler shut down")
