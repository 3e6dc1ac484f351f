"""Trigger dispatcher: maps events and alarms onto task executions."""
from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Tuple

from attrs import define, evolve, field

from marks_vault.automation.actions.organize import wildcard_to_regex
from marks_vault.automation.errors import TaskError
from marks_vault.automation.executor import TaskExecutor
from marks_vault.automation.models import (
    BOOKMARK_EVENTS,
    EventTrigger,
    EventType,
    Task,
    TaskExecutionResult,
    TaskStatus,
    TimeTrigger,
    Trigger,
    now_ms,
)
from marks_vault.automation.ports import AlarmInfo, AlarmService
from marks_vault.automation.repository import TaskRepository

logger = logging.getLogger(__name__)

ALARM_PREFIX = "task_alarm_"
CREDENTIAL_ERROR_PATTERNS = ("GitHub凭据", "未找到GitHub凭据", "凭据无效")

_ALARM_STATUSES = frozenset({TaskStatus.ENABLED, TaskStatus.FAILED})
_REMOVE_ON = frozenset({TaskStatus.DISABLED, TaskStatus.COMPLETED})

# Payload sections that may carry bookmark fields, in lookup order.
_PAYLOAD_SECTIONS = ("bookmark", "changeInfo", "moveInfo", "removeInfo")


def alarm_name(task_id: str) -> str:
    return f"{ALARM_PREFIX}{task_id}"


def get_task_id_from_alarm_name(name: str) -> Optional[str]:
    if not name.startswith(ALARM_PREFIX):
        return None
    return name[len(ALARM_PREFIX):] or None


def is_credential_error(message: Optional[str]) -> bool:
    return bool(message) and any(pattern in message for pattern in CREDENTIAL_ERROR_PATTERNS)


def _payload_value(event_data: Optional[Mapping[str, Any]], *keys: str) -> Optional[Any]:
    if not event_data:
        return None
    for section in _PAYLOAD_SECTIONS:
        part = event_data.get(section)
        if isinstance(part, Mapping):
            for key in keys:
                if part.get(key) is not None:
                    return part[key]
    for key in keys:
        if event_data.get(key) is not None:
            return event_data[key]
    return None


def conditions_match(conditions: Optional[Mapping[str, Any]], event_data: Optional[Mapping[str, Any]]) -> bool:
    if not conditions:
        return True
    url_pattern = conditions.get("url")
    if url_pattern:
        url = _payload_value(event_data, "url")
        if not url or not wildcard_to_regex(str(url_pattern)).fullmatch(str(url)):
            return False
    title = conditions.get("title")
    if title:
        value = _payload_value(event_data, "title")
        if value is None or str(title) not in str(value):
            return False
    parent = conditions.get("parentFolder")
    if parent:
        value = _payload_value(event_data, "parentId", "parentFolder")
        if value is None or str(value) != str(parent):
            return False
    return True


def event_matches(trigger: Trigger, event_type: EventType, event_data: Optional[Mapping[str, Any]] = None) -> bool:
    if not isinstance(trigger, EventTrigger) or not trigger.enabled:
        return False
    if trigger.event is not event_type:
        umbrella = trigger.event is EventType.BOOKMARK_CHANGED and event_type in BOOKMARK_EVENTS
        if not umbrella:
            return False
    return conditions_match(trigger.conditions, event_data)


def _schedule_key(trigger: Trigger) -> Trigger:
    if isinstance(trigger, TimeTrigger):
        return evolve(trigger, next_trigger=None)
    return trigger


@define(slots=False)
class TriggerDispatcher:
    """Routes browser events and alarms to the executor and keeps alarms in step with tasks."""

    repository: TaskRepository
    executor: TaskExecutor
    alarms: Optional[AlarmService] = None
    _listening: bool = field(default=False, init=False)

    async def init(self) -> None:
        await self.try_recover_failed_tasks()
        if not self._listening:
            self.repository.add_listener(self._on_task_changed)
            self._listening = True
        await self.sync_all_task_alarms()

    async def try_recover_failed_tasks(self) -> List[str]:
        """Re-enable FAILED tasks unless their last failure was a credential problem."""
        recovered = []
        for task in await self.repository.get_tasks_by_status(TaskStatus.FAILED):
            last = task.history.last_execution
            if last is None or last.success:
                continue
            if is_credential_error(last.error):
                logger.info("任务 %s 因凭据问题失败，保持FAILED状态", task.id)
                continue
            await self.repository.enable_task(task.id)
            recovered.append(task.id)
        if recovered:
            logger.info("已恢复 %d 个失败的任务: %s", len(recovered), ", ".join(recovered))
        return recovered

    # ---- events ----
    async def handle_event_trigger(
        self,
        event_type: EventType,
        event_data: Optional[Mapping[str, Any]] = None,
    ) -> List[Tuple[str, TaskExecutionResult]]:
        event_type = EventType(event_type)
        tasks = await self.repository.get_tasks_by_status(TaskStatus.ENABLED)
        matching = [task for task in tasks if event_matches(task.trigger, event_type, event_data)]
        if matching:
            logger.info("事件 %s 触发 %d 个任务", event_type.value, len(matching))
        outcomes = []
        for task in matching:
            try:
                result = await self.executor.execute_task(task.id)
                await self._record_triggered(task.id)
            except Exception as exc:  # pylint: disable=broad-except
                logger.exception("事件任务 %s 执行出错", task.id)
                result = TaskExecutionResult.failure(str(exc))
            outcomes.append((task.id, result))
        return outcomes

    async def _record_triggered(self, task_id: str) -> None:
        try:
            task = await self.repository.get_task_by_id(task_id)
        except TaskError:
            return
        if isinstance(task.trigger, EventTrigger):
            await self.repository.update_task(
                task_id,
                notify=False,
                trigger=evolve(task.trigger, last_triggered=now_ms()),
            )

    # ---- alarms ----
    async def handle_alarm(self, name: str) -> Optional[TaskExecutionResult]:
        task_id = get_task_id_from_alarm_name(name)
        if task_id is None:
            return None
        try:
            task = await self.repository.get_task_by_id(task_id)
        except TaskError:
            logger.warning("闹钟 %s 对应的任务不存在，移除闹钟", name)
            await self.remove_alarm(task_id)
            return None
        if task.is_manual:
            return None
        if task.status not in _ALARM_STATUSES:
            logger.info("任务 %s 状态为 %s，跳过闹钟触发", task_id, task.status.value)
            return None
        result = await self.executor.execute_task(task_id)
        await self._refresh_next_trigger(task_id)
        return result

    async def create_or_update_alarm(self, task: Task) -> Optional[AlarmInfo]:
        if self.alarms is None:
            return None
        trigger = task.trigger
        if not isinstance(trigger, TimeTrigger) or not trigger.enabled or task.status is not TaskStatus.ENABLED:
            await self.remove_alarm(task.id)
            return None
        info = self.alarms.schedule(alarm_name(task.id), trigger.schedule)
        if info.next_fire_time != trigger.next_trigger:
            await self.repository.update_task(
                task.id,
                notify=False,
                trigger=evolve(trigger, next_trigger=info.next_fire_time),
            )
        return info

    async def remove_alarm(self, task_id: str) -> bool:
        if self.alarms is None:
            return False
        return self.alarms.clear(alarm_name(task_id))

    async def sync_all_task_alarms(self) -> int:
        if self.alarms is None:
            return 0
        for info in self.alarms.get_all():
            if info.name.startswith(ALARM_PREFIX):
                self.alarms.clear(info.name)
        count = 0
        for task in await self.repository.get_tasks_by_status(TaskStatus.ENABLED):
            if isinstance(task.trigger, TimeTrigger) and await self.create_or_update_alarm(task):
                count += 1
        logger.info("已同步 %d 个定时任务闹钟", count)
        return count

    async def _refresh_next_trigger(self, task_id: str) -> None:
        if self.alarms is None:
            return
        info = self.alarms.get(alarm_name(task_id))
        try:
            task = await self.repository.get_task_by_id(task_id)
        except TaskError:
            return
        if info is None or not isinstance(task.trigger, TimeTrigger):
            return
        if info.next_fire_time != task.trigger.next_trigger:
            await self.repository.update_task(
                task_id,
                notify=False,
                trigger=evolve(task.trigger, next_trigger=info.next_fire_time),
            )

    async def _on_task_changed(self, task: Optional[Task], previous: Optional[Task]) -> None:
        if task is None:
            if previous is not None:
                await self.remove_alarm(previous.id)
            return
        trigger_changed = previous is None or _schedule_key(task.trigger) != _schedule_key(previous.trigger)
        # RUNNING -> ENABLED is a finished run; its alarm is still scheduled.
        became_enabled = task.status is TaskStatus.ENABLED and (
            previous is None or previous.status not in (TaskStatus.ENABLED, TaskStatus.RUNNING)
        )
        if trigger_changed or became_enabled:
            await self.create_or_update_alarm(task)
        elif task.status in _REMOVE_ON:
            await self.remove_alarm(task.id)


__all__ = [
    "ALARM_PREFIX",
    "CREDENTIAL_ERROR_PATTERNS",
    "TriggerDispatcher",
    "alarm_name",
    "conditions_match",
    "event_matches",
    "get_task_id_from_alarm_name",
    "is_credential_error",
]
