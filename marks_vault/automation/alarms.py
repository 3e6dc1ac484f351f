"""Alarm service built on APScheduler's AsyncIOScheduler."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from attrs import define, field

from marks_vault.automation.models import ScheduleType, TimeSchedule
from marks_vault.automation.ports import AlarmInfo

logger = logging.getLogger(__name__)

AlarmHandler = Callable[[str], Awaitable[Any]]

# Schedules count days from Sunday = 0.
DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def build_trigger(schedule: TimeSchedule, tz: Optional[str] = None) -> BaseTrigger:
    if schedule.type is ScheduleType.ONCE:
        return DateTrigger(run_date=datetime.fromtimestamp(schedule.when / 1000, tz=timezone.utc))
    if schedule.type is ScheduleType.INTERVAL:
        return IntervalTrigger(minutes=schedule.interval_minutes, timezone=tz)
    if schedule.type is ScheduleType.WEEKLY:
        return CronTrigger(
            day_of_week=DAY_NAMES[schedule.day_of_week],
            hour=schedule.hour,
            minute=schedule.minute,
            timezone=tz,
        )
    if schedule.type is ScheduleType.MONTHLY:
        return CronTrigger(day=schedule.day_of_month, hour=schedule.hour, minute=schedule.minute, timezone=tz)
    return CronTrigger(hour=schedule.hour, minute=schedule.minute, timezone=tz)


def _to_ms(moment: Optional[datetime]) -> Optional[int]:
    return int(moment.timestamp() * 1000) if moment else None


@define(slots=False)
class APSchedulerAlarmService:
    """Named wake-ups; every due alarm calls ``handler(name)`` on the event loop."""

    handler: Optional[AlarmHandler] = None
    timezone: Optional[str] = None
    scheduler: Optional[AsyncIOScheduler] = None
    _next_fire: Dict[str, Optional[int]] = field(factory=dict, init=False)
    _periods: Dict[str, Optional[float]] = field(factory=dict, init=False)

    def __attrs_post_init__(self) -> None:
        if self.scheduler is None:
            kwargs = {"timezone": self.timezone} if self.timezone else {}
            self.scheduler = AsyncIOScheduler(**kwargs)

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def set_handler(self, handler: AlarmHandler) -> None:
        self.handler = handler

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info("闹钟服务已启动，共 %d 个闹钟", len(self.scheduler.get_jobs()))

    def stop(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

    def schedule(self, name: str, schedule: TimeSchedule) -> AlarmInfo:
        trigger = build_trigger(schedule, self.timezone)
        # Pending jobs of a stopped scheduler are not de-duplicated by id.
        if self.scheduler.get_job(name) is not None:
            self.scheduler.remove_job(name)
        self.scheduler.add_job(
            self._fire,
            trigger=trigger,
            args=[name],
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )
        next_fire = _to_ms(trigger.get_next_fire_time(None, datetime.now(timezone.utc)))
        period = float(schedule.interval_minutes) if schedule.type is ScheduleType.INTERVAL else None
        self._next_fire[name] = next_fire
        self._periods[name] = period
        logger.debug("已设置闹钟 %s，下次触发时间 %s", name, next_fire)
        return AlarmInfo(name=name, next_fire_time=next_fire, period_minutes=period)

    def clear(self, name: str) -> bool:
        self._next_fire.pop(name, None)
        self._periods.pop(name, None)
        if self.scheduler.get_job(name) is None:
            return False
        self.scheduler.remove_job(name)
        return True

    def get(self, name: str) -> Optional[AlarmInfo]:
        job = self.scheduler.get_job(name)
        if job is None:
            return None
        next_run = getattr(job, "next_run_time", None)
        return AlarmInfo(
            name=name,
            next_fire_time=_to_ms(next_run) if next_run else self._next_fire.get(name),
            period_minutes=self._periods.get(name),
        )

    def get_all(self) -> List[AlarmInfo]:
        infos = []
        for job in self.scheduler.get_jobs():
            info = self.get(job.id)
            if info is not None:
                infos.append(info)
        return infos

    async def _fire(self, name: str) -> None:
        if self.handler is None:
            logger.warning("闹钟 %s 触发，但没有注册处理函数", name)
            return
        try:
            await self.handler(name)
        except Exception:  # pylint: disable=broad-except
            logger.exception("处理闹钟 %s 时出错", name)


__all__ = ["AlarmHandler", "APSchedulerAlarmService", "DAY_NAMES", "build_trigger"]
