"""Task executor: runs a task's action with mutual exclusion, timeout and retries."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from attrs import define, evolve, field

from marks_vault.automation.actions.base import ActionHandler
from marks_vault.automation.errors import (
    CredentialError,
    InvalidStateError,
    TaskError,
    TaskNotFoundError,
    TransientError,
)
from marks_vault.automation.models import (
    MAX_HISTORY_ITEMS,
    Action,
    BackupAction,
    BackupOperation,
    BookmarkSelection,
    SelectivePushAction,
    Task,
    TaskExecutionResult,
    TaskStatus,
    now_ms,
    selection_from_dict,
)
from marks_vault.automation.repository import TaskRepository

logger = logging.getLogger(__name__)

NON_RETRYABLE_PHRASES = ("任务当前未启用", "获取任务失败", "不支持的任务类型", "未找到GitHub凭据")
RETRYABLE_PHRASES = (
    "timeout",
    "network",
    "connection",
    "temporarily",
    "temporary",
    "rate limit",
    "busy",
    "overloaded",
)

INTERRUPTED_ERROR = "任务执行被中断(可能是由于浏览器关闭或扩展重新加载)"
INTERRUPTED_DETAILS = "自动恢复状态为FAILED"
RESTORE_REQUIRES_MANUAL = "恢复书签操作必须使用手动触发任务 (must be manually triggered)"
ALREADY_EXECUTING = "任务正在执行中 (already executing)"

_RUNNABLE = frozenset({TaskStatus.ENABLED, TaskStatus.FAILED})


@define(slots=True)
class ExecutorConfig:
    max_retries: int = 3
    retry_delay: float = 2.0
    timeout: float = 60.0
    max_history_length: int = MAX_HISTORY_ITEMS


def is_retryable_error(error: Union[BaseException, str, None]) -> bool:
    """Classify a failure.

    Typed errors decide first; otherwise the message is checked against the
    non-retryable phrases and then, case-insensitively, the retryable ones.
    Anything unrecognised is not retried.
    """
    if isinstance(error, (CredentialError, TaskNotFoundError, InvalidStateError)):
        return False
    if isinstance(error, TransientError):
        return True
    message = str(error) if error is not None else ""
    if any(phrase in message for phrase in NON_RETRYABLE_PHRASES):
        return False
    lowered = message.lower()
    return any(phrase in lowered for phrase in RETRYABLE_PHRASES)


def _describe(error: BaseException) -> Tuple[str, Optional[str]]:
    if isinstance(error, CredentialError):
        return str(error), error.details
    return str(error) or error.__class__.__name__, None


@define(slots=False)
class TaskExecutor:
    """Executes tasks through the registered action handlers.

    A task moves ENABLED/FAILED -> RUNNING -> ENABLED, COMPLETED (one-shot
    schedules) or FAILED. Rejections that happen before RUNNING (unknown task,
    wrong status, already executing) are returned to the caller and are not
    written to the task's history.
    """

    repository: TaskRepository
    handlers: Iterable[ActionHandler]
    config: ExecutorConfig = field(factory=ExecutorConfig)
    _executing: Set[str] = field(factory=set, init=False)

    def __attrs_post_init__(self) -> None:
        self.handlers = tuple(self.handlers)
        self.repository.history_limit = self.config.max_history_length

    def update_config(self, **changes: Any) -> ExecutorConfig:
        self.config = evolve(self.config, **changes)
        self.repository.history_limit = self.config.max_history_length
        logger.info("执行器配置已更新: %s", self.config)
        return self.config

    def is_executing(self, task_id: str) -> bool:
        return task_id in self._executing

    async def init(self) -> List[str]:
        """Fail tasks left RUNNING by a previous process."""
        recovered = []
        for task in await self.repository.get_tasks_by_status(TaskStatus.RUNNING):
            if task.id in self._executing:
                continue
            await self.repository.update_task_execution_history(
                task.id,
                TaskExecutionResult.failure(INTERRUPTED_ERROR, INTERRUPTED_DETAILS),
            )
            recovered.append(task.id)
        if recovered:
            logger.warning("已将 %d 个中断的任务标记为失败: %s", len(recovered), ", ".join(recovered))
        return recovered

    async def execute_task(self, task_id: str, retry_count: int = 0) -> TaskExecutionResult:
        return await self._guarded(task_id, retry_count, None)

    async def execute_task_with_selections(
        self,
        task_id: str,
        selections: Sequence[Union[BookmarkSelection, Mapping[str, Any]]],
    ) -> TaskExecutionResult:
        """Run a selective-push task with selections supplied for this run only."""
        try:
            task = await self.repository.get_task_by_id(task_id)
        except TaskError as exc:
            return TaskExecutionResult.failure(f"获取任务失败: {exc}")
        if not isinstance(task.action, SelectivePushAction):
            return TaskExecutionResult.failure("不支持的任务类型: 只有选择性推送任务可以指定书签")
        items = tuple(
            item if isinstance(item, BookmarkSelection) else selection_from_dict(item) for item in selections or ()
        )
        if not items:
            return TaskExecutionResult.failure("未选择任何书签")
        override = evolve(task.action, options=evolve(task.action.options, selections=items))
        return await self._guarded(task_id, 0, override)

    # ---- internal ----
    async def _guarded(self, task_id: str, retry_count: int, override: Optional[Action]) -> TaskExecutionResult:
        if task_id in self._executing:
            logger.warning("任务 %s 正在执行中，忽略本次请求", task_id)
            return TaskExecutionResult.failure(ALREADY_EXECUTING)
        self._executing.add(task_id)
        try:
            return await self._execute_with_retries(task_id, retry_count, override)
        except TaskError as exc:
            logger.error("任务 %s 执行失败: %s", task_id, exc)
            return TaskExecutionResult.failure(str(exc))
        finally:
            self._executing.discard(task_id)

    async def _execute_with_retries(
        self, task_id: str, retry_count: int, override: Optional[Action]
    ) -> TaskExecutionResult:
        attempt = retry_count
        while True:
            try:
                task = await self.repository.get_task_by_id(task_id)
            except TaskError as exc:
                return TaskExecutionResult.failure(f"获取任务失败: {exc}")

            allowed = _RUNNABLE | {TaskStatus.RUNNING} if attempt > 0 else _RUNNABLE
            if task.status not in allowed:
                return TaskExecutionResult.failure(f"任务当前未启用 (状态: {task.status.value})")

            action = override or task.action
            if (
                isinstance(action, BackupAction)
                and action.operation is BackupOperation.RESTORE
                and not task.is_manual
            ):
                result = TaskExecutionResult.failure(RESTORE_REQUIRES_MANUAL)
                await self.repository.update_task_execution_history(task_id, result)
                logger.warning("任务 %s 被拒绝: %s", task_id, RESTORE_REQUIRES_MANUAL)
                return result

            if task.status is not TaskStatus.RUNNING:
                await self.repository.update_task(task_id, status=TaskStatus.RUNNING)
            logger.info("开始执行任务 %s (%s)，第 %d 次尝试", task.name, task_id, attempt + 1)

            started = now_ms()
            result, error = await self._run_action(task, action)
            duration = now_ms() - started

            if not await self._still_exists(task_id):
                logger.warning("任务 %s 在执行期间已被删除，丢弃执行结果", task_id)
                return result

            if result.success:
                result = evolve(result, duration=result.duration or duration)
                await self.repository.update_task_execution_history(task_id, result)
                if task.is_once:
                    await self.repository.set_task_status(task_id, TaskStatus.COMPLETED)
                logger.info("任务 %s 执行成功，用时 %d ms", task_id, duration)
                return result

            if is_retryable_error(error) and attempt < self.config.max_retries:
                attempt += 1
                logger.warning(
                    "任务 %s 执行失败(%s)，%.1f 秒后进行第 %d 次重试",
                    task_id,
                    result.error,
                    self.config.retry_delay,
                    attempt,
                )
                await asyncio.sleep(self.config.retry_delay)
                continue

            result = evolve(result, duration=result.duration or duration)
            await self.repository.update_task_execution_history(task_id, result)
            logger.error("任务 %s 执行失败: %s", task_id, result.error)
            return result

    async def _run_action(
        self, task: Task, action: Action
    ) -> Tuple[TaskExecutionResult, Union[BaseException, str, None]]:
        handler = self._select_handler(action)
        if handler is None:
            error = InvalidStateError(f"不支持的任务类型: {action.type.value}")
            return TaskExecutionResult.failure(str(error)), error
        try:
            result = await asyncio.wait_for(handler.execute(task, action), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            error = TransientError(f"任务执行超时 (timeout after {self.config.timeout:g}s)")
            return TaskExecutionResult.failure(str(error)), error
        except Exception as exc:  # pylint: disable=broad-except
            message, details = _describe(exc)
            return TaskExecutionResult.failure(message, details), exc
        if result.success:
            return result, None
        return result, result.error

    def _select_handler(self, action: Action) -> Optional[ActionHandler]:
        for handler in self.handlers:
            if handler.can_handle(action):
                return handler
        return None

    async def _still_exists(self, task_id: str) -> bool:
        storage = await self.repository.get_tasks()
        return task_id in storage.tasks


__all__ = [
    "ALREADY_EXECUTING",
    "INTERRUPTED_DETAILS",
    "INTERRUPTED_ERROR",
    "NON_RETRYABLE_PHRASES",
    "RESTORE_REQUIRES_MANUAL",
    "RETRYABLE_PHRASES",
    "ExecutorConfig",
    "TaskExecutor",
    "is_retryable_error",
]
