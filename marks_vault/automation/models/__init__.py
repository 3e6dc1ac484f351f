"""Data models for the MarksVault automation engine.

Tasks pair one trigger with one action. Triggers and actions are closed sets
of attrs classes, each tagged with a ``type`` so callers can dispatch on it.
All models except :class:`TaskStorage` are frozen; updates go through
``attrs.evolve``.

The ``*_to_dict`` / ``*_from_dict`` helpers define the persisted JSON shape,
which keeps the extension's camelCase keys.
"""
from __future__ import annotations

import enum
import time
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from attrs import define, evolve, field

MAX_HISTORY_ITEMS = 20


def now_ms() -> int:
    return int(time.time() * 1000)


class TaskStatus(str, enum.Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerType(str, enum.Enum):
    TIME = "time"
    EVENT = "event"
    MANUAL = "manual"


class ScheduleType(str, enum.Enum):
    ONCE = "once"
    INTERVAL = "interval"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class EventType(str, enum.Enum):
    BROWSER_STARTUP = "browser_startup"
    BOOKMARK_CREATED = "bookmark_created"
    BOOKMARK_REMOVED = "bookmark_removed"
    BOOKMARK_CHANGED = "bookmark_changed"
    BOOKMARK_MOVED = "bookmark_moved"
    EXTENSION_CLICKED = "extension_clicked"


BOOKMARK_EVENTS = frozenset(
    {
        EventType.BOOKMARK_CREATED,
        EventType.BOOKMARK_REMOVED,
        EventType.BOOKMARK_CHANGED,
        EventType.BOOKMARK_MOVED,
    }
)


class ActionType(str, enum.Enum):
    BACKUP = "backup"
    ORGANIZE = "organize"
    PUSH = "push"
    SELECTIVE_PUSH = "selective_push"
    CUSTOM = "custom"


class BackupOperation(str, enum.Enum):
    BACKUP = "backup"
    RESTORE = "restore"


# ---- triggers ----


@define(frozen=True, slots=True)
class TimeSchedule:
    type: ScheduleType = ScheduleType.DAILY
    when: Optional[int] = None
    interval_minutes: Optional[int] = None
    hour: int = 9
    minute: int = 0
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None

    def __attrs_post_init__(self) -> None:
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError(f"invalid schedule time {self.hour}:{self.minute}")
        if self.type is ScheduleType.ONCE and self.when is None:
            raise ValueError("once schedule requires 'when'")
        if self.type is ScheduleType.INTERVAL and (self.interval_minutes or 0) <= 0:
            raise ValueError("interval schedule requires a positive 'interval_minutes'")
        if self.type is ScheduleType.WEEKLY and self.day_of_week not in range(7):
            raise ValueError("weekly schedule requires 'day_of_week' in 0..6 (0 = Sunday)")
        if self.type is ScheduleType.MONTHLY and self.day_of_month not in range(1, 32):
            raise ValueError("monthly schedule requires 'day_of_month' in 1..31")


@define(frozen=True, slots=True)
class TimeTrigger:
    schedule: TimeSchedule = field(factory=TimeSchedule)
    enabled: bool = True
    next_trigger: Optional[int] = None
    type: TriggerType = field(default=TriggerType.TIME, init=False)


@define(frozen=True, slots=True)
class EventTrigger:
    event: EventType
    conditions: Optional[Dict[str, Any]] = None
    enabled: bool = True
    last_triggered: Optional[int] = None
    type: TriggerType = field(default=TriggerType.EVENT, init=False)


@define(frozen=True, slots=True)
class ManualTrigger:
    description: str = "手动触发"
    enabled: bool = True
    type: TriggerType = field(default=TriggerType.MANUAL, init=False)


Trigger = Union[TimeTrigger, EventTrigger, ManualTrigger]


# ---- actions ----


@define(frozen=True, slots=True)
class BackupOptions:
    commit_message: Optional[str] = "自动备份书签"
    include_metadata: bool = True
    backup_file_path: Optional[str] = None


@define(frozen=True, slots=True)
class BackupAction:
    operation: BackupOperation = BackupOperation.BACKUP
    target: str = "github"
    description: str = "备份书签到GitHub"
    options: BackupOptions = field(factory=BackupOptions)
    type: ActionType = field(default=ActionType.BACKUP, init=False)


@define(frozen=True, slots=True)
class OrganizeFilter:
    pattern: Optional[str] = None
    folder: Optional[str] = None
    older_than: Optional[float] = None
    newer_than: Optional[float] = None


@define(frozen=True, slots=True)
class OrganizeOperation:
    operation: str
    filters: Optional[OrganizeFilter] = None
    target: Optional[str] = None
    new_name: Optional[str] = None


@define(frozen=True, slots=True)
class OrganizeAction:
    operations: Tuple[OrganizeOperation, ...] = field(factory=tuple, converter=tuple)
    description: str = "整理书签"
    type: ActionType = field(default=ActionType.ORGANIZE, init=False)


@define(frozen=True, slots=True)
class PushOptions:
    repo_name: str = "menav"
    folder_path: str = "bookmarks"
    format: str = "html"
    commit_message: Optional[str] = "自动推送书签"


@define(frozen=True, slots=True)
class PushAction:
    options: PushOptions = field(factory=PushOptions)
    target: str = "github"
    description: str = "推送书签到指定仓库"
    type: ActionType = field(default=ActionType.PUSH, init=False)


@define(frozen=True, slots=True)
class BookmarkSelection:
    id: str
    title: str
    type: str = "bookmark"
    url: Optional[str] = None
    children: Tuple["BookmarkSelection", ...] = field(factory=tuple, converter=tuple)
    custom_order: Optional[int] = None

    @property
    def is_folder(self) -> bool:
        return self.type == "folder"


@define(frozen=True, slots=True)
class SelectivePushOptions:
    repo_name: str = "menav"
    folder_path: str = "bookmarks"
    format: str = "html"
    commit_message: Optional[str] = "选择性推送书签"
    selections: Tuple[BookmarkSelection, ...] = field(factory=tuple, converter=tuple)


@define(frozen=True, slots=True)
class SelectivePushAction:
    options: SelectivePushOptions = field(factory=SelectivePushOptions)
    target: str = "github"
    description: str = "选择性推送书签到指定仓库"
    type: ActionType = field(default=ActionType.SELECTIVE_PUSH, init=False)


@define(frozen=True, slots=True)
class CustomAction:
    config: Dict[str, Any] = field(factory=dict)
    description: str = "自定义操作"
    type: ActionType = field(default=ActionType.CUSTOM, init=False)


Action = Union[BackupAction, OrganizeAction, PushAction, SelectivePushAction, CustomAction]


# ---- execution results ----


@define(frozen=True, slots=True)
class TaskExecutionResult:
    success: bool
    timestamp: int = field(factory=now_ms)
    duration: Optional[int] = None
    details: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str, details: Optional[str] = None) -> "TaskExecutionResult":
        return cls(success=False, error=error, details=details)


@define(frozen=True, slots=True)
class TaskHistory:
    executions: Tuple[TaskExecutionResult, ...] = field(factory=tuple, converter=tuple)
    last_execution: Optional[TaskExecutionResult] = None

    def record(self, result: TaskExecutionResult, limit: int = MAX_HISTORY_ITEMS) -> "TaskHistory":
        """Return a history with ``result`` prepended, keeping at most ``limit`` entries."""
        executions = (result,) + self.executions[: max(0, limit - 1)]
        return TaskHistory(executions=executions, last_execution=result)


# ---- tasks ----


def _default_trigger() -> TimeTrigger:
    return TimeTrigger(schedule=TimeSchedule(type=ScheduleType.DAILY, hour=9, minute=0))


@define(frozen=True, slots=True)
class Task:
    id: str
    name: str = "新建任务"
    description: str = ""
    status: TaskStatus = field(default=TaskStatus.DISABLED, converter=TaskStatus)
    created_at: int = field(factory=now_ms)
    updated_at: int = field(factory=now_ms)
    trigger: Trigger = field(factory=_default_trigger)
    action: Action = field(factory=BackupAction)
    history: TaskHistory = field(factory=TaskHistory)

    @property
    def is_manual(self) -> bool:
        return self.trigger.type is TriggerType.MANUAL

    @property
    def is_once(self) -> bool:
        return isinstance(self.trigger, TimeTrigger) and self.trigger.schedule.type is ScheduleType.ONCE


@define(slots=True)
class TaskStorage:
    tasks: Dict[str, Task] = field(factory=dict)
    last_updated: int = field(factory=now_ms)

    def copy(self) -> "TaskStorage":
        return TaskStorage(tasks=dict(self.tasks), last_updated=self.last_updated)


# ---- factories ----


def create_default_task(task_id: Optional[str] = None) -> Task:
    now = now_ms()
    return Task(id=task_id or f"task_{now}", created_at=now, updated_at=now)


def create_default_task_storage() -> TaskStorage:
    return TaskStorage()


def create_time_trigger(schedule_type: ScheduleType = ScheduleType.DAILY, **schedule: Any) -> TimeTrigger:
    return TimeTrigger(schedule=TimeSchedule(type=ScheduleType(schedule_type), **schedule))


def create_event_trigger(event: EventType, conditions: Optional[Dict[str, Any]] = None) -> EventTrigger:
    return EventTrigger(event=EventType(event), conditions=conditions)


def create_manual_trigger(description: str = "手动触发") -> ManualTrigger:
    return ManualTrigger(description=description)


def create_backup_action(operation: Union[str, BackupOperation] = BackupOperation.BACKUP) -> BackupAction:
    operation = BackupOperation(operation)
    if operation is BackupOperation.RESTORE:
        return BackupAction(
            operation=operation,
            description="从GitHub恢复书签",
            options=BackupOptions(commit_message="", backup_file_path=""),
        )
    return BackupAction(operation=operation)


def create_organize_action() -> OrganizeAction:
    return OrganizeAction(operations=[OrganizeOperation(operation="move", filters=OrganizeFilter(pattern=""))])


def create_push_action() -> PushAction:
    return PushAction()


def create_selective_push_action(
    repo_name: str = "menav",
    folder_path: str = "bookmarks",
    commit_message: str = "选择性推送书签",
) -> SelectivePushAction:
    return SelectivePushAction(
        options=SelectivePushOptions(
            repo_name=repo_name,
            folder_path=folder_path,
            commit_message=commit_message,
        )
    )


# ---- serialization ----


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def result_to_dict(result: TaskExecutionResult) -> Dict[str, Any]:
    return _compact(
        {
            "success": result.success,
            "timestamp": result.timestamp,
            "duration": result.duration,
            "details": result.details,
            "error": result.error,
        }
    )


def result_from_dict(data: Mapping[str, Any]) -> TaskExecutionResult:
    return TaskExecutionResult(
        success=bool(data["success"]),
        timestamp=int(data["timestamp"]),
        duration=data.get("duration"),
        details=data.get("details"),
        error=data.get("error"),
    )


def schedule_to_dict(schedule: TimeSchedule) -> Dict[str, Any]:
    return _compact(
        {
            "type": schedule.type.value,
            "when": schedule.when,
            "intervalMinutes": schedule.interval_minutes,
            "hour": schedule.hour,
            "minute": schedule.minute,
            "dayOfWeek": schedule.day_of_week,
            "dayOfMonth": schedule.day_of_month,
        }
    )


def schedule_from_dict(data: Mapping[str, Any]) -> TimeSchedule:
    return TimeSchedule(
        type=ScheduleType(data["type"]),
        when=data.get("when"),
        interval_minutes=data.get("intervalMinutes"),
        hour=int(data.get("hour", 9)),
        minute=int(data.get("minute", 0)),
        day_of_week=data.get("dayOfWeek"),
        day_of_month=data.get("dayOfMonth"),
    )


def trigger_to_dict(trigger: Trigger) -> Dict[str, Any]:
    if isinstance(trigger, TimeTrigger):
        return _compact(
            {
                "type": trigger.type.value,
                "enabled": trigger.enabled,
                "schedule": schedule_to_dict(trigger.schedule),
                "nextTrigger": trigger.next_trigger,
            }
        )
    if isinstance(trigger, EventTrigger):
        return _compact(
            {
                "type": trigger.type.value,
                "enabled": trigger.enabled,
                "event": trigger.event.value,
                "conditions": dict(trigger.conditions) if trigger.conditions else None,
                "lastTriggered": trigger.last_triggered,
            }
        )
    if isinstance(trigger, ManualTrigger):
        return {"type": trigger.type.value, "enabled": trigger.enabled, "description": trigger.description}
    raise TypeError(f"unknown trigger: {trigger!r}")


def trigger_from_dict(data: Mapping[str, Any]) -> Trigger:
    kind = TriggerType(data["type"])
    enabled = bool(data.get("enabled", True))
    if kind is TriggerType.TIME:
        return TimeTrigger(
            schedule=schedule_from_dict(data["schedule"]),
            enabled=enabled,
            next_trigger=data.get("nextTrigger"),
        )
    if kind is TriggerType.EVENT:
        return EventTrigger(
            event=EventType(data["event"]),
            conditions=data.get("conditions"),
            enabled=enabled,
            last_triggered=data.get("lastTriggered"),
        )
    return ManualTrigger(description=data.get("description", "手动触发"), enabled=enabled)


def selection_to_dict(selection: BookmarkSelection) -> Dict[str, Any]:
    return _compact(
        {
            "id": selection.id,
            "title": selection.title,
            "type": selection.type,
            "url": selection.url,
            "children": [selection_to_dict(child) for child in selection.children] or None,
            "customOrder": selection.custom_order,
        }
    )


def selection_from_dict(data: Mapping[str, Any]) -> BookmarkSelection:
    return BookmarkSelection(
        id=str(data["id"]),
        title=str(data.get("title", "")),
        type=data.get("type", "folder" if data.get("children") else "bookmark"),
        url=data.get("url"),
        children=[selection_from_dict(child) for child in data.get("children") or []],
        custom_order=data.get("customOrder"),
    )


def _filter_to_dict(filters: Optional[OrganizeFilter]) -> Optional[Dict[str, Any]]:
    if filters is None:
        return None
    return _compact(
        {
            "pattern": filters.pattern,
            "folder": filters.folder,
            "olderThan": filters.older_than,
            "newerThan": filters.newer_than,
        }
    )


def _filter_from_dict(data: Optional[Mapping[str, Any]]) -> Optional[OrganizeFilter]:
    if data is None:
        return None
    return OrganizeFilter(
        pattern=data.get("pattern"),
        folder=data.get("folder"),
        older_than=data.get("olderThan"),
        newer_than=data.get("newerThan"),
    )


def action_to_dict(action: Action) -> Dict[str, Any]:
    base = {"type": action.type.value, "description": action.description}
    if isinstance(action, BackupAction):
        base.update(
            operation=action.operation.value,
            target=action.target,
            options=_compact(
                {
                    "commitMessage": action.options.commit_message,
                    "includeMetadata": action.options.include_metadata,
                    "backupFilePath": action.options.backup_file_path,
                }
            ),
        )
    elif isinstance(action, OrganizeAction):
        base["operations"] = [
            _compact(
                {
                    "operation": op.operation,
                    "filters": _filter_to_dict(op.filters),
                    "target": op.target,
                    "newName": op.new_name,
                }
            )
            for op in action.operations
        ]
    elif isinstance(action, PushAction):
        base.update(
            target=action.target,
            options=_compact(
                {
                    "repoName": action.options.repo_name,
                    "folderPath": action.options.folder_path,
                    "format": action.options.format,
                    "commitMessage": action.options.commit_message,
                }
            ),
        )
    elif isinstance(action, SelectivePushAction):
        options = _compact(
            {
                "repoName": action.options.repo_name,
                "folderPath": action.options.folder_path,
                "format": action.options.format,
                "commitMessage": action.options.commit_message,
            }
        )
        if action.options.selections:
            options["selections"] = [selection_to_dict(item) for item in action.options.selections]
        base.update(target=action.target, options=options)
    elif isinstance(action, CustomAction):
        base["config"] = dict(action.config)
    else:
        raise TypeError(f"unknown action: {action!r}")
    return base


def action_from_dict(data: Mapping[str, Any]) -> Action:
    kind = ActionType(data["type"])
    options = data.get("options") or {}
    description = data.get("description")
    extra = {"description": description} if description is not None else {}
    if kind is ActionType.BACKUP:
        return BackupAction(
            operation=BackupOperation(data.get("operation") or "backup"),
            target=data.get("target", "github"),
            options=BackupOptions(
                commit_message=options.get("commitMessage"),
                include_metadata=bool(options.get("includeMetadata", True)),
                backup_file_path=options.get("backupFilePath"),
            ),
            **extra,
        )
    if kind is ActionType.ORGANIZE:
        return OrganizeAction(
            operations=[
                OrganizeOperation(
                    operation=str(op.get("operation", "")),
                    filters=_filter_from_dict(op.get("filters")),
                    target=op.get("target"),
                    new_name=op.get("newName"),
                )
                for op in data.get("operations") or []
            ],
            **extra,
        )
    if kind is ActionType.PUSH:
        return PushAction(
            options=PushOptions(
                repo_name=options.get("repoName", "menav"),
                folder_path=options.get("folderPath", "bookmarks"),
                format=options.get("format", "html"),
                commit_message=options.get("commitMessage"),
            ),
            target=data.get("target", "github"),
            **extra,
        )
    if kind is ActionType.SELECTIVE_PUSH:
        return SelectivePushAction(
            options=SelectivePushOptions(
                repo_name=options.get("repoName", "menav"),
                folder_path=options.get("folderPath", "bookmarks"),
                format=options.get("format", "html"),
                commit_message=options.get("commitMessage"),
                selections=[selection_from_dict(item) for item in options.get("selections") or []],
            ),
            target=data.get("target", "github"),
            **extra,
        )
    return CustomAction(config=dict(data.get("config") or {}), **extra)


def history_to_dict(history: TaskHistory) -> Dict[str, Any]:
    data: Dict[str, Any] = {"executions": [result_to_dict(item) for item in history.executions]}
    if history.last_execution is not None:
        data["lastExecution"] = result_to_dict(history.last_execution)
    return data


def history_from_dict(data: Optional[Mapping[str, Any]]) -> TaskHistory:
    data = data or {}
    last = data.get("lastExecution")
    return TaskHistory(
        executions=[result_from_dict(item) for item in data.get("executions") or []],
        last_execution=result_from_dict(last) if last else None,
    )


def task_to_dict(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "name": task.name,
        "description": task.description,
        "status": task.status.value,
        "createdAt": task.created_at,
        "updatedAt": task.updated_at,
        "trigger": trigger_to_dict(task.trigger),
        "action": action_to_dict(task.action),
        "history": history_to_dict(task.history),
    }


def task_from_dict(data: Mapping[str, Any]) -> Task:
    return Task(
        id=str(data["id"]),
        name=data.get("name", "新建任务"),
        description=data.get("description") or "",
        status=TaskStatus(data["status"]),
        created_at=int(data["createdAt"]),
        updated_at=int(data["updatedAt"]),
        trigger=trigger_from_dict(data["trigger"]),
        action=action_from_dict(data["action"]),
        history=history_from_dict(data.get("history")),
    )


def storage_to_dict(storage: TaskStorage) -> Dict[str, Any]:
    return {
        "tasks": {task_id: task_to_dict(task) for task_id, task in storage.tasks.items()},
        "lastUpdated": storage.last_updated,
    }


def storage_from_dict(data: Mapping[str, Any]) -> TaskStorage:
    return TaskStorage(
        tasks={task_id: task_from_dict(item) for task_id, item in (data.get("tasks") or {}).items()},
        last_updated=int(data.get("lastUpdated") or now_ms()),
    )


__all__ = [
    "MAX_HISTORY_ITEMS",
    "now_ms",
    "evolve",
    "TaskStatus",
    "TriggerType",
    "ScheduleType",
    "EventType",
    "BOOKMARK_EVENTS",
    "ActionType",
    "BackupOperation",
    "TimeSchedule",
    "TimeTrigger",
    "EventTrigger",
    "ManualTrigger",
    "Trigger",
    "BackupOptions",
    "BackupAction",
    "OrganizeFilter",
    "OrganizeOperation",
    "OrganizeAction",
    "PushOptions",
    "PushAction",
    "BookmarkSelection",
    "SelectivePushOptions",
    "SelectivePushAction",
    "CustomAction",
    "Action",
    "TaskExecutionResult",
    "TaskHistory",
    "Task",
    "TaskStorage",
    "create_default_task",
    "create_default_task_storage",
    "create_time_trigger",
    "create_event_trigger",
    "create_manual_trigger",
    "create_backup_action",
    "create_organize_action",
    "create_push_action",
    "create_selective_push_action",
    "result_to_dict",
    "result_from_dict",
    "trigger_to_dict",
    "trigger_from_dict",
    "action_to_dict",
    "action_from_dict",
    "selection_to_dict",
    "selection_from_dict",
    "task_to_dict",
    "task_from_dict",
    "storage_to_dict",
    "storage_from_dict",
]
