"""Background job scheduler for the escrow engine.

Wraps APScheduler's AsyncIOScheduler. Jobs are coalesced and never run
concurrently with themselves, so a slow scan is skipped rather than stacked.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .deposits import DepositMonitor
from .jobs.deposit_scan import scan_deposits
from .jobs.timeout_scan import scan_timeouts
from .timeouts.monitor import TimeoutMonitor

logger = logging.getLogger(__name__)

JobCallable = Callable[..., Awaitable[object]]

DEPOSIT_SCAN_JOB = "escrow_deposit_scan"
TIMEOUT_SCAN_JOB = "escrow_timeout_scan"


class EscrowScheduler:
    """Runs the periodic deposit and timeout scans."""

    def __init__(self, timezone: str = "UTC", misfire_grace_seconds: int = 60 * 5):
        self._started = False
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_seconds,
            },
            timezone=timezone,
        )

    def add_interval_job(
        self,
        func: JobCallable,
        job_id: str,
        *,
        seconds: int,
        **kwargs: Any,
    ) -> None:
        """Register (or replace) an interval job."""
        # replace_existing only applies once started; pending jobs are kept in a list
        if self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)
        self._scheduler.add_job(
            func,
            "interval",
            id=job_id,
            seconds=seconds,
            replace_existing=True,
            **kwargs,
        )
        logger.info("Registered interval job: %s (every %ss)", job_id, seconds)

    def register_scans(
        self,
        deposits: DepositMonitor,
        timeouts: TimeoutMonitor,
        *,
        deposit_interval_seconds: int,
        timeout_interval_seconds: int,
    ) -> None:
        self.add_interval_job(
            scan_deposits, DEPOSIT_SCAN_JOB, seconds=deposit_interval_seconds, args=[deposits]
        )
        self.add_interval_job(
            scan_timeouts, TIMEOUT_SCAN_JOB, seconds=timeout_interval_seconds, args=[timeouts]
        )

    def job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    async def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        if self._started:
            return
        self._scheduler.start()
        self._started = True
        logger.info("Scheduler started")

    async def shutdown(self, wait: bool = True) -> None:
        if not self._started:
            return
        self._scheduler.shutdown(wait=wait)
        self._started = False
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and bool(self._scheduler.running)
