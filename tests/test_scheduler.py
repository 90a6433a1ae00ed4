"""Tests for the APScheduler wrapper (scheduler never started)."""

import pytest
from datetime import datetime, timezone

from followthrough.config import SchedulerConfig
from followthrough.scheduler import WorkflowScheduler


def noop():
    pass


@pytest.fixture
def scheduler():
    return WorkflowScheduler(SchedulerConfig())


class TestWorkflowScheduler:
    def test_jobs_are_registered(self, scheduler):
        scheduler.add_interval_job(noop, 60, "detection-poll", "Meeting detection")
        scheduler.add_daily_job(noop, 7, 0, "daily-sync")
        scheduler.add_date_job(noop, datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc), "brief-evt-1")

        jobs = {job["id"]: job["name"] for job in scheduler.get_jobs()}
        assert jobs == {
            "detection-poll": "Meeting detection",
            "daily-sync": "daily-sync",
            "brief-evt-1": "brief-evt-1",
        }

    def test_cancel_job(self, scheduler):
        scheduler.add_interval_job(noop, 60, "detection-poll")
        assert scheduler.cancel_job("detection-poll") is True
        assert scheduler.cancel_job("detection-poll") is False
        assert scheduler.get_jobs() == []

    def test_timezone_from_config(self):
        scheduler = WorkflowScheduler(SchedulerConfig(timezone="Europe/London"))
        assert str(scheduler.timezone) == "Europe/London"
