"""
Background scheduler.

One process-wide APScheduler instance runs call auto-end timers (one-shot
date jobs) and the periodic outbox drain.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
import pytz

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None

# Stored timestamps are naive UTC, so the scheduler runs in UTC too
SCHEDULER_TIMEZONE = pytz.utc


def get_scheduler() -> AsyncIOScheduler:
    """Return the global scheduler, creating it (stopped) on first use."""
    global scheduler

    if scheduler is None:
        scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)
    return scheduler


def start_scheduler() -> AsyncIOScheduler:
    """Start the scheduler if not already running. Must be called inside the event loop."""
    current = get_scheduler()
    if not current.running:
        current.start()
        logger.info("Background scheduler started with %d job(s)", len(current.get_jobs()))
    return current


def stop_scheduler() -> None:
    """Stop the scheduler without waiting for running jobs."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
    scheduler = None
