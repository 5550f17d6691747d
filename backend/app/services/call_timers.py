"""
Call auto-end timers.

Each live call session has one APScheduler date job keyed by call id. The
deadline itself is persisted on the session (``auto_end_at``) so that
``recover`` can rebuild the jobs after a restart.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.core.clock import utcnow, as_utc_naive
from backend.app.core.scheduler import get_scheduler
from backend.app.models.call_session import CallSession, LIVE_CALL_STATUSES

logger = logging.getLogger(__name__)

JOB_PREFIX = "call-timeout:"

TimeoutCallback = Callable[[int], Awaitable[None]]


class CallTimeoutScheduler:

    def __init__(self, on_timeout: Optional[TimeoutCallback] = None, scheduler: Optional[BaseScheduler] = None):
        self.on_timeout = on_timeout
        self._scheduler = scheduler

    @property
    def scheduler(self) -> BaseScheduler:
        return self._scheduler or get_scheduler()

    @staticmethod
    def job_id(call_id: int) -> str:
        return f"{JOB_PREFIX}{call_id}"

    def schedule(self, call_id: int, run_at: datetime) -> None:
        """(Re)schedule the auto-end of ``call_id`` at ``run_at`` (naive UTC)."""
        if self.on_timeout is None:
            logger.warning("No timeout callback configured, call %s will not auto-end", call_id)
            return

        self.scheduler.add_job(
            self.on_timeout,
            trigger="date",
            run_date=as_utc_naive(run_at),
            args=[call_id],
            id=self.job_id(call_id),
            name=f"Auto-end call {call_id}",
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
        )
        logger.debug("Scheduled auto-end for call %s at %s", call_id, run_at)

    def cancel(self, call_id: int) -> bool:
        """Remove the pending job; returns False if there was none."""
        try:
            self.scheduler.remove_job(self.job_id(call_id))
        except JobLookupError:
            return False
        logger.debug("Cancelled auto-end for call %s", call_id)
        return True

    def is_scheduled(self, call_id: int) -> bool:
        return self.scheduler.get_job(self.job_id(call_id)) is not None

    async def recover(self, session_factory: async_sessionmaker) -> int:
        """
        Reschedule every live session's persisted deadline.

        Overdue deadlines are scheduled for immediate execution.

        Returns:
            Number of timers restored
        """
        async with session_factory() as db:
            result = await db.execute(
                select(CallSession.id, CallSession.auto_end_at).where(
                    CallSession.status.in_(LIVE_CALL_STATUSES),
                    CallSession.auto_end_at.isnot(None),
                )
            )
            pending = result.all()

        now = utcnow()
        for call_id, deadline in pending:
            deadline = as_utc_naive(deadline)
            self.schedule(call_id, deadline if deadline > now else now)

        if pending:
            logger.info("Recovered %d call timeout(s)", len(pending))
        return len(pending)
