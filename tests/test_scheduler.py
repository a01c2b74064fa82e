"""
Scheduler wiring tests
"""

from datetime import timedelta

from config import Config
from jobs.scheduler import LifecycleScheduler


class TestLifecycleScheduler:

    def test_both_sweeps_registered(self, session_factory):
        scheduler = LifecycleScheduler(session_factory)
        scheduler.setup_jobs()

        jobs = {job.id: job for job in scheduler.scheduler.get_jobs()}
        assert set(jobs) == {"hold_expiry_sweep", "lifecycle_expiry_sweep"}
        assert jobs["hold_expiry_sweep"].trigger.interval == timedelta(seconds=Config.HOLD_SWEEP_INTERVAL_SECONDS)
        assert jobs["lifecycle_expiry_sweep"].trigger.interval == timedelta(
            seconds=Config.LIFECYCLE_SWEEP_INTERVAL_SECONDS
        )

    def test_stop_before_start_is_harmless(self, session_factory):
        LifecycleScheduler(session_factory).stop()
