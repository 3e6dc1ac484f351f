"""Tests for the APScheduler-backed alarm service."""
from __future__ import annotations

import asyncio
from datetime import timedelta

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from marks_vault.automation.alarms import APSchedulerAlarmService, build_trigger
from marks_vault.automation.models import ScheduleType, TimeSchedule, now_ms


def run(coro):
    return asyncio.run(coro)


def _fields(trigger: CronTrigger) -> dict:
    return {field.name: str(field) for field in trigger.fields if not field.is_default}


def test_build_trigger_maps_schedule_types() -> None:
    once = build_trigger(TimeSchedule(type=ScheduleType.ONCE, when=1_700_000_000_000))
    interval = build_trigger(TimeSchedule(type=ScheduleType.INTERVAL, interval_minutes=15), "UTC")
    daily = build_trigger(TimeSchedule(type=ScheduleType.DAILY, hour=7, minute=30), "UTC")
    weekly = build_trigger(TimeSchedule(type=ScheduleType.WEEKLY, day_of_week=1, hour=8), "UTC")
    monthly = build_trigger(TimeSchedule(type=ScheduleType.MONTHLY, day_of_month=15), "UTC")

    assert isinstance(once, DateTrigger)
    assert int(once.run_date.timestamp() * 1000) == 1_700_000_000_000
    assert isinstance(interval, IntervalTrigger)
    assert interval.interval == timedelta(minutes=15)
    assert _fields(daily) == {"hour": "7", "minute": "30"}
    assert _fields(weekly) == {"day_of_week": "mon", "hour": "8", "minute": "0"}
    assert _fields(monthly) == {"day": "15", "hour": "9", "minute": "0"}


def test_schedule_replaces_and_clears_jobs() -> None:
    service = APSchedulerAlarmService(timezone="UTC")

    first = service.schedule("task_alarm_a", TimeSchedule(type=ScheduleType.INTERVAL, interval_minutes=5))
    second = service.schedule("task_alarm_a", TimeSchedule(type=ScheduleType.DAILY, hour=6))
    names = [info.name for info in service.get_all()]

    assert first.period_minutes == 5.0
    assert second.period_minutes is None
    assert second.next_fire_time is not None and second.next_fire_time > now_ms()
    assert names == ["task_alarm_a"]
    assert service.clear("task_alarm_a") is True
    assert service.clear("task_alarm_a") is False
    assert service.get_all() == []


def test_due_alarm_calls_handler_on_the_event_loop() -> None:
    async def scenario():
        fired = asyncio.Event()
        names = []

        async def handler(name: str) -> None:
            names.append(name)
            fired.set()

        service = APSchedulerAlarmService(handler=handler, timezone="UTC")
        service.start()
        try:
            service.schedule("task_alarm_now", TimeSchedule(type=ScheduleType.ONCE, when=now_ms() - 1000))
            await asyncio.wait_for(fired.wait(), timeout=5)
        finally:
            service.stop()
        return names

    assert run(scenario()) == ["task_alarm_now"]
