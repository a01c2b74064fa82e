"""Background job scheduler for the booking lifecycle sweeps"""

import logging
from functools import partial
from typing import Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import Config
from jobs.hold_expiry_job import run_hold_expiry_job
from jobs.lifecycle_expiry_job import run_lifecycle_expiry_job

logger = logging.getLogger(__name__)


class LifecycleScheduler:
    """Runs the hold-expiry and lifecycle-expiry sweeps on fixed intervals"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self.session_factory = session_factory

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed runs into one
            'max_instances': 1,
            'misfire_grace_time': 60
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register both sweeps; replaces existing jobs with the same ids"""
        self.scheduler.add_job(
            partial(run_hold_expiry_job, self.session_factory),
            trigger=IntervalTrigger(seconds=Config.HOLD_SWEEP_INTERVAL_SECONDS),
            id="hold_expiry_sweep",
            name="Cancel Expired Booking Holds",
            replace_existing=True,
        )

        self.scheduler.add_job(
            partial(run_lifecycle_expiry_job, self.session_factory),
            trigger=IntervalTrigger(seconds=Config.LIFECYCLE_SWEEP_INTERVAL_SECONDS),
            id="lifecycle_expiry_sweep",
            name="Expire Offers, RFPs and Lapsed Consents",
            replace_existing=True,
        )

    def start(self):
        """Start the scheduler; must be called with a running event loop"""
        self.setup_jobs()
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.info(f"✅ Lifecycle scheduler started with jobs: {[job.id for job in jobs]}")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Lifecycle scheduler stopped")
