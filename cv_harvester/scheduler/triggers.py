"""Translate job schedules into APScheduler triggers."""

from __future__ import annotations

from datetime import datetime, timezone

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..clock import ensure_utc
from ..config import ScheduleConfig, ScheduleType
from ..models import JobSchedule


def build_trigger(schedule: ScheduleConfig, anchor: datetime) -> BaseTrigger:
    """Build the trigger for ``schedule``; ``anchor`` seeds interval and once triggers."""

    if schedule.type is ScheduleType.CRON:
        return CronTrigger.from_crontab(str(schedule.value), timezone=timezone.utc)
    if schedule.type is ScheduleType.INTERVAL:
        if isinstance(schedule.value, (int, float)):
            return IntervalTrigger(seconds=float(schedule.value), start_date=anchor, timezone=timezone.utc)
        if isinstance(schedule.value, dict):
            return IntervalTrigger(start_date=anchor, timezone=timezone.utc, **schedule.value)
        raise ValueError("Interval schedule requires seconds or kwargs dict")
    if schedule.type is ScheduleType.ONCE:
        if schedule.value:
            run_date = ensure_utc(datetime.fromisoformat(str(schedule.value)))
        else:
            run_date = anchor
        return DateTrigger(run_date=run_date, timezone=timezone.utc)
    raise ValueError(f"Unknown schedule type: {schedule.type}")


def next_fire_time(
    schedule: JobSchedule, now: datetime, previous: datetime | None = None
) -> datetime | None:
    """Next run strictly inside the schedule window, or ``None`` when exhausted."""

    anchor = schedule.start_at or now
    trigger = build_trigger(schedule.trigger, ensure_utc(anchor))
    fire = trigger.get_next_fire_time(previous, now)
    if fire is None:
        return None
    fire = ensure_utc(fire)
    if schedule.end_at and fire > schedule.end_at:
        return None
    return fire


def following_fire_time(schedule: JobSchedule, now: datetime, previous: datetime) -> datetime | None:
    """First fire after ``previous`` that is also later than ``now``; missed runs are skipped."""

    fire = next_fire_time(schedule, now, previous=previous)
    while fire is not None and fire <= now:
        fire = next_fire_time(schedule, now, previous=fire)
    return fire


__all__ = ["build_trigger", "following_fire_time", "next_fire_time"]
