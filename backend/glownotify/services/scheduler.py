"""Scheduler service - the clock that drives time-based notifications.

Each job wraps one sweep from the behavior tracker or the delivery service.
Jobs run with max_instances=1 so a slow sweep is skipped rather than stacked,
and every job logs and swallows its own errors so one failing sweep never
stops the others.
"""
import logging
from typing import Awaitable, Callable, Dict, Optional

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .behavior import BehaviorTracker
from .delivery import ScheduledDeliveryService

logger = logging.getLogger(__name__)

DELIVERY_SWEEP_MINUTES = 5


class NotificationScheduler:
    """Owns the APScheduler instance and the handles of every registered job."""

    def __init__(
        self,
        tracker: BehaviorTracker,
        delivery: ScheduledDeliveryService,
        timezone: str = "UTC",
    ):
        self.tracker = tracker
        self.delivery = delivery
        self.timezone = timezone
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.jobs: Dict[str, Job] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _cron(self, **fields) -> CronTrigger:
        return CronTrigger(timezone=self.timezone, **fields)

    def _job_table(self):
        cron = self._cron
        return [
            # On the minute so the local HH:MM comparison sees every minute once
            ("routine_reminders", self.tracker.check_routine_reminders, cron(minute="*")),
            ("inactive_users", self.tracker.check_inactive_users, cron(hour=10, minute=0)),
            ("personalized_tips", self.tracker.send_personalized_tips, cron(hour=14, minute=0)),
            ("weather_advice", self.tracker.send_weather_advice, cron(hour=8, minute=0)),
            ("challenge_notifications", self.tracker.send_challenge_notifications, cron(hour=11, minute=0)),
            ("cleanup", self.delivery.cleanup, cron(hour=0, minute=0)),
            ("booking_reminders", self.tracker.check_booking_reminders, cron(day_of_week="mon", hour=9, minute=0)),
            ("delivery_sweep", self.delivery.process_due, IntervalTrigger(minutes=DELIVERY_SWEEP_MINUTES)),
            # Runs hourly; the sweep itself keeps only users whose local hour is 18, 20 or 22
            ("streak_protection", self.tracker.check_streak_protection, cron(minute=0)),
        ]

    def start(self):
        """Start the scheduler."""
        if self._running:
            return

        self.scheduler = AsyncIOScheduler(timezone=self.timezone)
        for job_id, func, trigger in self._job_table():
            self.jobs[job_id] = self.scheduler.add_job(
                self._guarded(job_id, func),
                trigger=trigger,
                id=job_id,
                replace_existing=True,
                max_instances=1,
            )

        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started with {len(self.jobs)} jobs (timezone={self.timezone})")

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler and self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            self.jobs = {}
            logger.info("Scheduler stopped")

    async def run_job(self, job_id: str):
        """Run one job immediately, outside its trigger."""
        for name, func, _ in self._job_table():
            if name == job_id:
                return await self._guarded(name, func)()
        raise KeyError(job_id)

    @staticmethod
    def _guarded(job_id: str, func: Callable[[], Awaitable]) -> Callable[[], Awaitable]:
        async def run():
            try:
                result = await func()
                logger.debug(f"Job {job_id} finished: {result}")
                return result
            except Exception as e:
                logger.error(f"Error in scheduled job {job_id}: {e}")
                return None

        run.__name__ = f"job_{job_id}"
        return run
