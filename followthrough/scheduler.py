"""
Background job scheduling for the trigger pipeline.

Uses APScheduler's BackgroundScheduler so jobs run in worker threads next
to the Flask app that receives webhooks.

Jobs FollowThrough schedules:
    interval  detection poll (every 60s): meeting start/end detection
    interval  recording poll (every 5 min): is the transcript there yet?
    date      one job per upcoming meeting: generate + deliver the brief
    cron      daily full calendar sync, nightly session archival

APScheduler overview:
    - IntervalTrigger: every N seconds
    - DateTrigger: once, at a given time
    - CronTrigger: at specific times (like cron on Linux)
    - misfire_grace_time: if a job misses its time (process asleep/busy),
      still run it when within this window
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pytz
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from followthrough.config import SchedulerConfig

logger = logging.getLogger(__name__)


class WorkflowScheduler:
    """
    Usage:
        scheduler = WorkflowScheduler(config.scheduler)
        scheduler.add_interval_job(detector.perform_periodic_check, 60, "detection-poll")
        scheduler.start()
    """

    def __init__(self, config: SchedulerConfig, scheduler: Optional[BackgroundScheduler] = None):
        self.config = config
        self.timezone = pytz.timezone(config.timezone)
        self.scheduler = scheduler or BackgroundScheduler(timezone=self.timezone)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started (%s) with %d job(s)", self.config.timezone, len(self.get_jobs()))

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped.")

    def add_interval_job(
        self, func: Callable, seconds: int, job_id: str, name: Optional[str] = None
    ) -> None:
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds, timezone=self.timezone),
            id=job_id,
            name=name or job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Scheduled '%s' every %ds", name or job_id, seconds)

    def add_date_job(
        self,
        func: Callable,
        run_at: datetime,
        job_id: str,
        args: Optional[list] = None,
        kwargs: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> None:
        """One-shot job. Re-adding the same job_id reschedules it."""
        self.scheduler.add_job(
            func,
            trigger=DateTrigger(run_date=run_at),
            id=job_id,
            name=name or job_id,
            args=args or [],
            kwargs=kwargs or {},
            replace_existing=True,
            misfire_grace_time=600,  # Late by up to 10 min still counts
        )
        logger.info("Scheduled '%s' at %s", name or job_id, run_at.isoformat())

    def add_daily_job(
        self, func: Callable, hour: int, minute: int, job_id: str, name: Optional[str] = None
    ) -> None:
        day_of_week = "mon-fri" if self.config.weekdays_only else "*"
        self.scheduler.add_job(
            func,
            trigger=CronTrigger(hour=hour, minute=minute, day_of_week=day_of_week, timezone=self.timezone),
            id=job_id,
            name=name or job_id,
            replace_existing=True,
            misfire_grace_time=3600,  # Allow up to 1 hour late
        )
        logger.info("Scheduled '%s' daily at %02d:%02d", name or job_id, hour, minute)

    def cancel_job(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(job_id)
            logger.info("Cancelled job %s", job_id)
            return True
        except JobLookupError:
            return False

    def get_jobs(self) -> List[Dict[str, Any]]:
        return [
            {"id": job.id, "name": job.name, "next_run_time": getattr(job, "next_run_time", None)}
            for job in self.scheduler.get_jobs()
        ]
