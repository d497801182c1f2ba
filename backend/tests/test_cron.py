from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from core.config import Settings
from core.cron import next_run_time, parse_cron, seconds_until_next


class TestParseCron:
    def test_hourly(self):
        schedule = parse_cron("0 * * * *")
        assert schedule.minute == {0}
        assert len(schedule.hour) == 24

    def test_step_expression(self):
        assert parse_cron("*/15 * * * *").minute == {0, 15, 30, 45}

    @pytest.mark.parametrize("expression", ["", "0 * * *", "0 * * * * *", "61 * * * *", "every hour"])
    def test_invalid(self, expression):
        with pytest.raises(ValueError, match="Invalid cron"):
            parse_cron(expression)

    def test_next_run_is_aligned(self):
        schedule = parse_cron("*/5 * * * *", "UTC")
        upcoming = next_run_time(schedule)
        assert upcoming.minute % 5 == 0
        assert upcoming > datetime.now(timezone.utc) - timedelta(seconds=1)
        assert 0 <= seconds_until_next(schedule) <= 300

    def test_timezone_clock(self):
        schedule = parse_cron("0 9 * * *", "America/Chicago")
        upcoming = next_run_time(schedule)
        assert upcoming.utcoffset() is not None
        assert upcoming.hour == 9


class _DriftingSchedule:
    """Clock that advances 2 ms on every read, like a busy interpreter."""

    def __init__(self, start, boundary):
        self.clock = start
        self.boundary = boundary

    def now(self):
        self.clock += timedelta(milliseconds=2)
        return self.clock

    def remaining_estimate(self, last_run_at):
        return self.boundary - self.now()


class TestNextRunBoundary:
    def test_lands_on_the_boundary(self):
        start = datetime(2026, 10, 17, 22, 54, 30, tzinfo=timezone.utc)
        boundary = datetime(2026, 10, 17, 22, 55, tzinfo=timezone.utc)

        assert next_run_time(_DriftingSchedule(start, boundary)) == boundary

    def test_seconds_until_measured_to_the_boundary(self):
        start = datetime(2026, 10, 17, 22, 54, 30, tzinfo=timezone.utc)
        boundary = datetime(2026, 10, 17, 22, 55, tzinfo=timezone.utc)

        assert 29.9 < seconds_until_next(_DriftingSchedule(start, boundary)) <= 30.0

    def test_real_schedule_has_no_fractional_seconds(self):
        upcoming = next_run_time(parse_cron("*/5 * * * *", "UTC"))
        assert upcoming.second == 0
        assert upcoming.microsecond == 0


class TestSettingsValidation:
    def test_rejects_bad_schedule(self):
        with pytest.raises(ValidationError):
            Settings(replenishment_schedule="not a cron")

    def test_rejects_unknown_timezone(self):
        with pytest.raises(ValidationError):
            Settings(scheduler_timezone="Mars/Olympus")

    def test_rejects_non_positive_batch_size(self):
        with pytest.raises(ValidationError):
            Settings(replenishment_batch_size=0)
