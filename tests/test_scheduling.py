"""
Tests for cron validation, the job wrapper and the scheduler surfaces.
"""
from unittest.mock import Mock

import pytest

from edulure_sync.errors import ConfigurationError
from edulure_sync.scheduling import JobScheduler, ManualTicker, guarded, validate_cron


# ==============================================================================
# CRON VALIDATION
# ==============================================================================

class TestValidateCron:

    @pytest.mark.parametrize("expression", ["*/15 * * * *", "15 3 * * *", "0 9 * * 1-5"])
    def test_accepts_crontab_expressions(self, expression):
        assert validate_cron(expression, "UTC") is not None

    @pytest.mark.parametrize("expression", ["", "   ", None, "every tuesday", "61 * * * *"])
    def test_rejects_invalid_expressions(self, expression):
        with pytest.raises(ConfigurationError):
            validate_cron(expression, "UTC")

    def test_rejects_unknown_timezone(self):
        with pytest.raises(ConfigurationError):
            validate_cron("*/15 * * * *", "Mars/Olympus_Mons")

    def test_accepts_named_timezone(self):
        assert validate_cron("15 3 * * *", "Europe/London") is not None


# ==============================================================================
# JOB WRAPPER
# ==============================================================================

def test_guarded_returns_result():
    assert guarded("job", lambda: 3)() == 3


def test_guarded_swallows_and_logs_failures():
    failing = Mock(side_effect=RuntimeError("boom"))
    runner = guarded("job", failing)

    assert runner() is None
    assert runner() is None
    assert failing.call_count == 2


def test_guarded_runs_inside_app_context(app):
    from flask import current_app

    runner = guarded("job", lambda: current_app.name, app)
    assert runner() == app.name


# ==============================================================================
# SCHEDULERS
# ==============================================================================

class TestManualTicker:

    def test_records_and_runs_jobs(self):
        ticker = ManualTicker()
        ticker.add_interval("poll", lambda: "polled", 2.0)
        ticker.add_cron("nightly", lambda: "ran", "15 3 * * *")

        assert sorted(ticker.job_ids()) == ["nightly", "poll"]
        assert ticker.run("poll") == "polled"
        assert ticker.jobs["nightly"]["cron"] == "15 3 * * *"

        ticker.remove("poll")
        ticker.remove("missing")
        assert ticker.job_ids() == ["nightly"]

    def test_add_cron_rejects_invalid_expression(self):
        with pytest.raises(ConfigurationError):
            ManualTicker().add_cron("bad", lambda: None, "nope")


class TestJobScheduler:

    def test_registers_jobs_and_shuts_down(self):
        scheduler = JobScheduler(max_workers=2)
        scheduler.add_interval("poll", lambda: None, 60)
        scheduler.add_cron("nightly", lambda: None, "15 3 * * *")

        assert sorted(scheduler.job_ids()) == ["nightly", "poll"]

        scheduler.start()
        try:
            assert scheduler.running
            scheduler.add_interval("poll", lambda: None, 30)
            assert sorted(scheduler.job_ids()) == ["nightly", "poll"]
        finally:
            scheduler.shutdown()
        assert not scheduler.running

    def test_remove_unknown_job_is_a_no_op(self):
        scheduler = JobScheduler()
        scheduler.add_interval("poll", lambda: None, 60)
        scheduler.remove("poll")
        scheduler.remove("poll")
        assert scheduler.job_ids() == []
