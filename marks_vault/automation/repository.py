"""Task repository: CRUD over the persisted task map with a write-through cache."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from attrs import define, evolve, field

from marks_vault.automation.errors import StorageError, TaskNotFoundError
from marks_vault.automation.models import (
    MAX_HISTORY_ITEMS,
    BackupOperation,
    ManualTrigger,
    Task,
    TaskExecutionResult,
    TaskStatus,
    TaskStorage,
    create_backup_action,
    create_default_task,
    now_ms,
    storage_from_dict,
    storage_to_dict,
)
from marks_vault.automation.store.interface import KeyValueStoreProtocol

logger = logging.getLogger(__name__)

TASKS_STORAGE_KEY = "tasks_data"

SYSTEM_BOOKMARKS_BACKUP = "system_bookmarks_backup"
SYSTEM_BOOKMARKS_RESTORE = "system_bookmarks_restore"
SYSTEM_TASK_IDS = (SYSTEM_BOOKMARKS_BACKUP, SYSTEM_BOOKMARKS_RESTORE)

TaskListener = Callable[[Optional[Task], Optional[Task]], Awaitable[None]]

_NOTIFY_FIELDS = ("trigger", "status")


def is_system_task_id(task_id: str) -> bool:
    return task_id in SYSTEM_TASK_IDS


def _system_task(task_id: str) -> Task:
    now = now_ms()
    if task_id == SYSTEM_BOOKMARKS_BACKUP:
        return Task(
            id=task_id,
            name="备份书签",
            description="将书签备份到GitHub仓库",
            status=TaskStatus.ENABLED,
            created_at=now,
            updated_at=now,
            trigger=ManualTrigger(description="手动备份"),
            action=create_backup_action(BackupOperation.BACKUP),
        )
    return Task(
        id=task_id,
        name="恢复书签",
        description="从GitHub仓库恢复书签",
        status=TaskStatus.ENABLED,
        created_at=now,
        updated_at=now,
        trigger=ManualTrigger(description="手动恢复"),
        action=create_backup_action(BackupOperation.RESTORE),
    )


@define(slots=False)
class TaskRepository:
    """Owns the ``tasks_data`` key.

    Every mutation runs read-copy-save under one write lock, builds a new
    :class:`TaskStorage`, persists it and only then swaps the cache. Listeners
    are called after the lock is released. A failed write drops the cache and
    bumps ``generation`` so the next read reloads from the store.
    """

    store: KeyValueStoreProtocol
    history_limit: int = MAX_HISTORY_ITEMS
    _cache: Optional[TaskStorage] = field(default=None, init=False)
    _generation: int = field(default=0, init=False)
    _listeners: List[TaskListener] = field(factory=list, init=False)
    _last_id_ms: int = field(default=0, init=False)
    _write_lock: asyncio.Lock = field(factory=asyncio.Lock, init=False, repr=False)

    @property
    def generation(self) -> int:
        return self._generation

    def add_listener(self, listener: TaskListener) -> None:
        self._listeners.append(listener)

    # ---- reads ----
    async def init(self) -> None:
        await self.get_tasks()

    async def get_tasks(self) -> TaskStorage:
        if self._cache is not None:
            return self._cache
        generation = self._generation
        try:
            data = await self.store.get(TASKS_STORAGE_KEY)
        except StorageError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            raise StorageError(f"读取任务数据失败: {exc}") from exc
        if data is None:
            storage = TaskStorage()
            await self._save(storage)
            return storage
        try:
            storage = storage_from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"任务数据格式无效: {exc}") from exc
        # A write that landed or failed while we were loading supersedes this read.
        if self._cache is not None:
            return self._cache
        if generation == self._generation:
            self._cache = storage
        return storage

    async def get_task_by_id(self, task_id: str) -> Task:
        storage = await self.get_tasks()
        task = storage.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def get_tasks_by_status(self, status: Optional[TaskStatus] = None) -> List[Task]:
        storage = await self.get_tasks()
        tasks = list(storage.tasks.values())
        if status is None:
            return tasks
        status = TaskStatus(status)
        return [task for task in tasks if task.status is status]

    # ---- writes ----
    async def create_task(self, **fields: Any) -> Task:
        fields.pop("id", None)
        fields.pop("created_at", None)
        fields.pop("updated_at", None)
        async with self._write_lock:
            storage = await self.get_tasks()
            task = evolve(create_default_task(self._next_id(storage)), **fields)
            updated = storage.copy()
            updated.tasks[task.id] = task
            await self._save(updated)
        logger.info("已创建任务: %s (%s)", task.name, task.id)
        await self._notify(task, None)
        return task

    async def update_task(self, task_id: str, notify: bool = True, **changes: Any) -> Task:
        changes.pop("id", None)
        changes.pop("created_at", None)
        async with self._write_lock:
            previous, task = await self._apply_changes(task_id, changes)
        if notify and any(key in changes for key in _NOTIFY_FIELDS):
            await self._notify(task, previous)
        return task

    async def delete_task(self, task_id: str) -> None:
        async with self._write_lock:
            storage = await self.get_tasks()
            previous = storage.tasks.get(task_id)
            if previous is None:
                raise TaskNotFoundError(task_id)
            updated = storage.copy()
            del updated.tasks[task_id]
            await self._save(updated)
        logger.info("已删除任务: %s", task_id)
        await self._notify(None, previous)

    async def set_task_status(self, task_id: str, status: TaskStatus) -> Task:
        return await self.update_task(task_id, status=status)

    async def enable_task(self, task_id: str) -> Task:
        return await self.set_task_status(task_id, TaskStatus.ENABLED)

    async def disable_task(self, task_id: str) -> Task:
        return await self.set_task_status(task_id, TaskStatus.DISABLED)

    async def update_task_execution_history(self, task_id: str, result: TaskExecutionResult) -> Task:
        status = TaskStatus.ENABLED if result.success else TaskStatus.FAILED
        async with self._write_lock:
            current = await self.get_task_by_id(task_id)
            changes = {"history": current.history.record(result, self.history_limit), "status": status}
            previous, task = await self._apply_changes(task_id, changes)
        await self._notify(task, previous)
        return task

    async def clear_all_tasks(self) -> None:
        async with self._write_lock:
            await self._save(TaskStorage())
        logger.info("已清空所有任务")

    async def ensure_system_tasks(self) -> List[Task]:
        """Insert the built-in manual backup/restore tasks when missing."""
        async with self._write_lock:
            storage = await self.get_tasks()
            missing = [task_id for task_id in SYSTEM_TASK_IDS if task_id not in storage.tasks]
            if not missing:
                return []
            updated = storage.copy()
            created = []
            for task_id in missing:
                task = _system_task(task_id)
                updated.tasks[task_id] = task
                created.append(task)
            await self._save(updated)
        logger.info("已创建系统任务: %s", ", ".join(missing))
        return created

    # ---- internal ----
    async def _apply_changes(self, task_id: str, changes: Dict[str, Any]) -> Tuple[Task, Task]:
        # Caller holds the write lock.
        storage = await self.get_tasks()
        previous = storage.tasks.get(task_id)
        if previous is None:
            raise TaskNotFoundError(task_id)
        task = evolve(previous, updated_at=now_ms(), **changes)
        updated = storage.copy()
        updated.tasks[task_id] = task
        await self._save(updated)
        return previous, task

    def _next_id(self, storage: TaskStorage) -> str:
        stamp = max(now_ms(), self._last_id_ms)
        self._last_id_ms = stamp
        task_id = f"task_{stamp}"
        suffix = 1
        while task_id in storage.tasks:
            task_id = f"task_{stamp}_{suffix}"
            suffix += 1
        return task_id

    async def _save(self, storage: TaskStorage) -> None:
        storage.last_updated = now_ms()
        try:
            await self.store.set(TASKS_STORAGE_KEY, storage_to_dict(storage))
        except Exception as exc:  # pylint: disable=broad-except
            self._cache = None
            self._generation += 1
            logger.error("保存任务数据失败: %s", exc)
            if isinstance(exc, StorageError):
                raise
            raise StorageError(f"保存任务数据失败: {exc}") from exc
        self._cache = storage

    async def _notify(self, task: Optional[Task], previous: Optional[Task]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(task, previous)
            except Exception:  # pylint: disable=broad-except
                logger.exception("任务变更监听器执行失败")


__all__ = [
    "TASKS_STORAGE_KEY",
    "SYSTEM_BOOKMARKS_BACKUP",
    "SYSTEM_BOOKMARKS_RESTORE",
    "SYSTEM_TASK_IDS",
    "TaskListener",
    "TaskRepository",
    "is_system_task_id",
]
