"""Scheduler for the periodic expired-payment sweep."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from coursepay.services.payment import PaymentService

logger = structlog.get_logger(__name__)

EXPIRY_SWEEP_JOB_ID = "expiry_sweep"

DEFAULT_INTERVAL_MINUTES = 5


class ExpirySweepScheduler:
    """Runs ``PaymentService.cancel_expired_payments`` on a fixed interval.

    Pending payments older than ``older_than`` are cancelled. The default
    grace period is twice the redirect expiry, so a callback delivered late
    still finds its payment pending.
    """

    def __init__(
        self,
        service: PaymentService,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
        older_than: Optional[timedelta] = None,
        timezone: str = "Asia/Ho_Chi_Minh",
    ) -> None:
        if interval_minutes <= 0:
            raise ValueError(f"Sweep interval must be positive, got {interval_minutes}")

        self.service = service
        self._interval_minutes = interval_minutes
        self._older_than = older_than or timedelta(
            minutes=2 * service.client.settings.expire_minutes
        )
        self._timezone = timezone

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def older_than(self) -> timedelta:
        return self._older_than

    async def run_sweep(self) -> int:
        """Cancel expired payments once, returns how many were cancelled"""
        cancelled = await self.service.cancel_expired_payments(self._older_than)
        logger.info("expiry_sweep_completed", cancelled=len(cancelled))
        return len(cancelled)

    async def _run_job(self) -> None:
        try:
            await self.run_sweep()
        except Exception:
            logger.exception("expiry_sweep_failed")
            raise

    def start(self) -> None:
        """Start the scheduler.

        Must be called with a running event loop. coalesce and
        max_instances=1 keep a slow sweep from overlapping the next one.
        """
        if self._is_running:
            logger.warning("scheduler_already_running")
            return

        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._scheduler.add_job(
            self._run_job,
            trigger=IntervalTrigger(minutes=self._interval_minutes, timezone=self._timezone),
            id=EXPIRY_SWEEP_JOB_ID,
            name="Expired payment sweep",
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        self._scheduler.start()
        self._is_running = True

        logger.info(
            "scheduler_started",
            job_id=EXPIRY_SWEEP_JOB_ID,
            interval_minutes=self._interval_minutes,
            older_than_minutes=int(self._older_than.total_seconds() // 60),
        )

    def shutdown(self, wait: bool = True) -> None:
        if not self._is_running or self._scheduler is None:
            logger.warning("scheduler_not_running")
            return

        self._scheduler.shutdown(wait=wait)
        self._is_running = False
        self._scheduler = None

        logger.info("scheduler_stopped", wait=wait)

    def get_next_run_time(self) -> Optional[str]:
        """ISO time of the next sweep, None when not scheduled"""
        if self._scheduler is None:
            return None

        job = self._scheduler.get_job(EXPIRY_SWEEP_JOB_ID)
        if job is None or job.next_run_time is None:
            return None

        return job.next_run_time.isoformat()
