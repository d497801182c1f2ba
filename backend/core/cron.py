"""
Cron expression helpers.

Five-field cron strings (``minute hour day-of-month month day-of-week``) are
parsed into Celery ``crontab`` schedules so the in-process replenishment
scheduler and Celery beat share one cron dialect.
"""

from datetime import datetime, timedelta
from functools import partial
from zoneinfo import ZoneInfo

from celery.schedules import ParseException, crontab


def parse_cron(expression: str, tz: str | None = None) -> crontab:
    """Parse a 5-field cron expression.

    When ``tz`` is given, the schedule's clock runs in that timezone.
    Raises ValueError for malformed expressions.
    """
    if not isinstance(expression, str):
        raise ValueError("Cron expression must be a string")
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression {expression!r}: expected 5 fields, got {len(fields)}")

    minute, hour, day_of_month, month_of_year, day_of_week = fields
    kwargs = {}
    if tz:
        kwargs["nowfun"] = partial(datetime.now, ZoneInfo(tz))

    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
            **kwargs,
        )
    except (ParseException, ValueError, IndexError) as exc:
        raise ValueError(f"Invalid cron expression {expression!r}: {exc}") from exc


def next_run_time(schedule: crontab) -> datetime:
    """Next occurrence on the schedule's clock, on a whole second."""
    now = schedule.now()
    upcoming = now + schedule.remaining_estimate(now)
    # remaining_estimate reads the clock again, so the sum lands just short of the boundary.
    return (upcoming + timedelta(microseconds=500_000)).replace(microsecond=0)


def seconds_until_next(schedule: crontab) -> float:
    """Seconds from the schedule's clock until its next occurrence."""
    upcoming = next_run_time(schedule)
    return max((upcoming - schedule.now()).total_seconds(), 0.0)
