"""Tests for the task executor state machine."""
from __future__ import annotations

import asyncio

from marks_vault.automation.actions.backup import BackupHandler
from marks_vault.automation.bookmarks import MemoryBookmarkStore
from marks_vault.automation.errors import CredentialError, TransientError
from marks_vault.automation.executor import (
    ALREADY_EXECUTING,
    INTERRUPTED_DETAILS,
    INTERRUPTED_ERROR,
    ExecutorConfig,
    TaskExecutor,
    is_retryable_error,
)
from marks_vault.automation.models import (
    BookmarkSelection,
    ManualTrigger,
    ScheduleType,
    SelectivePushAction,
    TaskExecutionResult,
    TaskStatus,
    create_backup_action,
    create_time_trigger,
    now_ms,
)
from marks_vault.automation.repository import TaskRepository
from marks_vault.automation.store.memory import MemoryKeyValueStore
from marks_vault.automation.tests.fakes import FakeCredentialStore, FakeRemote, ScriptedHandler, YieldingStore


def run(coro):
    return asyncio.run(coro)


def build(outcomes=None, delay: float = 0.0, **config):
    repo = TaskRepository(MemoryKeyValueStore())
    handler = ScriptedHandler(outcomes=list(outcomes or []), delay=delay)
    config.setdefault("retry_delay", 0.0)
    executor = TaskExecutor(repo, [handler], config=ExecutorConfig(**config))
    return repo, handler, executor


def test_successful_run_re_enables_recurring_task() -> None:
    async def scenario():
        repo, handler, executor = build()
        task = await repo.create_task(name="daily", status=TaskStatus.ENABLED)
        result = await executor.execute_task(task.id)
        return result, await repo.get_task_by_id(task.id), handler

    result, task, handler = run(scenario())

    assert result.success
    assert result.duration is not None
    assert task.status is TaskStatus.ENABLED
    assert task.history.last_execution == result
    assert len(handler.calls) == 1


def test_once_schedule_completes_after_success() -> None:
    async def scenario():
        repo, _, executor = build()
        task = await repo.create_task(
            status=TaskStatus.ENABLED,
            trigger=create_time_trigger(ScheduleType.ONCE, when=now_ms()),
        )
        await executor.execute_task(task.id)
        return await repo.get_task_by_id(task.id)

    task = run(scenario())

    assert task.status is TaskStatus.COMPLETED
    assert task.history.last_execution.success


def test_failed_task_can_be_run_again() -> None:
    async def scenario():
        repo, handler, executor = build(outcomes=[RuntimeError("boom")])
        task = await repo.create_task(status=TaskStatus.ENABLED)
        first = await executor.execute_task(task.id)
        failed = await repo.get_task_by_id(task.id)
        second = await executor.execute_task(task.id)
        return first, failed, second, await repo.get_task_by_id(task.id), handler

    first, failed, second, task, handler = run(scenario())

    assert not first.success and first.error == "boom"
    assert failed.status is TaskStatus.FAILED
    assert second.success
    assert task.status is TaskStatus.ENABLED
    assert len(handler.calls) == 2


def test_disabled_and_completed_tasks_are_rejected_without_history() -> None:
    async def scenario():
        repo, handler, executor = build()
        disabled = await repo.create_task(status=TaskStatus.DISABLED)
        completed = await repo.create_task(status=TaskStatus.COMPLETED)
        results = [await executor.execute_task(disabled.id), await executor.execute_task(completed.id)]
        return results, await repo.get_tasks(), handler

    results, storage, handler = run(scenario())

    assert all("任务当前未启用" in result.error for result in results)
    assert handler.calls == []
    assert all(task.history.executions == () for task in storage.tasks.values())
    assert {task.status for task in storage.tasks.values()} == {TaskStatus.DISABLED, TaskStatus.COMPLETED}


def test_unknown_task_returns_failure() -> None:
    result = run(build()[2].execute_task("missing"))

    assert not result.success
    assert "获取任务失败" in result.error


def test_concurrent_executions_are_mutually_exclusive() -> None:
    async def scenario():
        repo, handler, executor = build(delay=0.05)
        task = await repo.create_task(status=TaskStatus.ENABLED)
        results = await asyncio.gather(executor.execute_task(task.id), executor.execute_task(task.id))
        return results, handler, executor, task

    results, handler, executor, task = run(scenario())

    assert sorted(result.success for result in results) == [False, True]
    assert [result.error for result in results if not result.success] == [ALREADY_EXECUTING]
    assert len(handler.calls) == 1
    assert not executor.is_executing(task.id)


def test_transient_errors_are_retried_up_to_the_limit() -> None:
    async def scenario():
        repo, handler, executor = build(outcomes=[TransientError("network down")] * 10, max_retries=3)
        task = await repo.create_task(status=TaskStatus.ENABLED)
        result = await executor.execute_task(task.id)
        return result, await repo.get_task_by_id(task.id), handler

    result, task, handler = run(scenario())

    assert len(handler.calls) == 4
    assert not result.success
    assert task.status is TaskStatus.FAILED
    assert len(task.history.executions) == 1


def test_retryable_failed_result_recovers_on_retry() -> None:
    async def scenario():
        repo, handler, executor = build(outcomes=[TaskExecutionResult.failure("Server busy, try later")])
        task = await repo.create_task(status=TaskStatus.ENABLED)
        result = await executor.execute_task(task.id)
        return result, await repo.get_task_by_id(task.id), handler

    result, task, handler = run(scenario())

    assert result.success
    assert len(handler.calls) == 2
    assert task.status is TaskStatus.ENABLED
    assert len(task.history.executions) == 1


def test_non_retryable_errors_fail_immediately() -> None:
    async def scenario():
        repo, handler, executor = build(outcomes=[CredentialError("GitHub凭据无效或已过期: 401"), ValueError("bad data")])
        first = await repo.create_task(status=TaskStatus.ENABLED)
        second = await repo.create_task(status=TaskStatus.ENABLED)
        results = [await executor.execute_task(first.id), await executor.execute_task(second.id)]
        return results, handler, await repo.get_task_by_id(first.id)

    results, handler, first = run(scenario())

    assert len(handler.calls) == 2
    assert "凭据" in results[0].error
    assert results[0].details
    assert results[1].error == "bad data"
    assert first.status is TaskStatus.FAILED


def test_missing_credentials_fail_backup_with_credential_message() -> None:
    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        handler = BackupHandler(MemoryBookmarkStore(), FakeCredentialStore(None), FakeRemote())
        executor = TaskExecutor(repo, [handler], config=ExecutorConfig(retry_delay=0.0))
        task = await repo.create_task(status=TaskStatus.ENABLED, trigger=ManualTrigger())
        result = await executor.execute_task(task.id)
        return result, await repo.get_task_by_id(task.id)

    result, task = run(scenario())

    assert not result.success
    assert "凭据" in result.error
    assert task.status is TaskStatus.FAILED
    assert task.history.last_execution.error == result.error


def test_restore_requires_manual_trigger() -> None:
    async def scenario():
        repo, handler, executor = build()
        scheduled = await repo.create_task(status=TaskStatus.ENABLED, action=create_backup_action("restore"))
        manual = await repo.create_task(
            status=TaskStatus.ENABLED,
            trigger=ManualTrigger(),
            action=create_backup_action("restore"),
        )
        rejected = await executor.execute_task(scheduled.id)
        accepted = await executor.execute_task(manual.id)
        return rejected, accepted, await repo.get_task_by_id(scheduled.id), handler, manual

    rejected, accepted, scheduled, handler, manual = run(scenario())

    assert "必须使用手动触发任务" in rejected.error
    assert scheduled.status is TaskStatus.FAILED
    assert scheduled.history.last_execution.error == rejected.error
    assert accepted.success
    assert [task_id for task_id, _ in handler.calls] == [manual.id]


def test_timeout_cancels_the_action_and_is_retryable() -> None:
    async def scenario():
        repo, handler, executor = build(delay=1.0, timeout=0.05, max_retries=0)
        task = await repo.create_task(status=TaskStatus.ENABLED)
        result = await executor.execute_task(task.id)
        return result, await repo.get_task_by_id(task.id)

    result, task = run(scenario())

    assert not result.success
    assert "timeout" in result.error
    assert is_retryable_error(result.error)
    assert task.status is TaskStatus.FAILED


def test_init_fails_tasks_left_running() -> None:
    async def scenario():
        repo, _, executor = build()
        stuck = await repo.create_task(status=TaskStatus.RUNNING)
        idle = await repo.create_task(status=TaskStatus.ENABLED)
        recovered = await executor.init()
        return recovered, await repo.get_task_by_id(stuck.id), await repo.get_task_by_id(idle.id)

    recovered, stuck, idle = run(scenario())

    assert recovered == [stuck.id]
    assert stuck.status is TaskStatus.FAILED
    assert stuck.history.last_execution.error == INTERRUPTED_ERROR
    assert stuck.history.last_execution.details == INTERRUPTED_DETAILS
    assert idle.status is TaskStatus.ENABLED


def test_task_deleted_mid_run_is_not_written_back() -> None:
    async def scenario():
        repo, _, executor = build(delay=0.05)
        task = await repo.create_task(status=TaskStatus.ENABLED)
        running = asyncio.create_task(executor.execute_task(task.id))
        await asyncio.sleep(0.01)
        await repo.delete_task(task.id)
        result = await running
        return result, await repo.get_tasks()

    result, storage = run(scenario())

    assert result.success
    assert storage.tasks == {}


def test_selections_are_applied_for_one_run_only() -> None:
    async def scenario():
        repo, handler, executor = build()
        task = await repo.create_task(status=TaskStatus.ENABLED, action=SelectivePushAction())
        empty = await executor.execute_task_with_selections(task.id, [])
        result = await executor.execute_task_with_selections(
            task.id,
            [{"id": "5", "title": "Python", "url": "https://python.org"}],
        )
        return empty, result, handler, await repo.get_task_by_id(task.id)

    empty, result, handler, task = run(scenario())

    assert empty.error == "未选择任何书签"
    assert result.success
    (_, action), = handler.calls
    assert action.options.selections == (BookmarkSelection(id="5", title="Python", url="https://python.org"),)
    assert task.action.options.selections == ()


def test_selections_rejected_for_other_action_types() -> None:
    async def scenario():
        repo, _, executor = build()
        task = await repo.create_task(status=TaskStatus.ENABLED)
        return await executor.execute_task_with_selections(task.id, [{"id": "1", "title": "x"}])

    assert "不支持的任务类型" in run(scenario()).error


def test_update_config_changes_history_limit() -> None:
    repo, _, executor = build()

    config = executor.update_config(max_retries=1, max_history_length=5)

    assert config.max_retries == 1
    assert config.retry_delay == 0.0
    assert repo.history_limit == 5


def test_error_classification() -> None:
    assert is_retryable_error("Connection reset by peer")
    assert is_retryable_error("RATE LIMIT exceeded")
    assert is_retryable_error(TransientError("anything"))
    assert not is_retryable_error(CredentialError("network"))
    assert not is_retryable_error("未找到GitHub凭据 (network)")
    assert not is_retryable_error("任务当前未启用 timeout")
    assert not is_retryable_error("boom")
    assert not is_retryable_error(None)


def test_parallel_runs_of_different_tasks_keep_both_histories() -> None:
    async def scenario():
        store = YieldingStore()
        repo = TaskRepository(store)
        executor = TaskExecutor(repo, [ScriptedHandler()], config=ExecutorConfig(retry_delay=0.0))
        first = await repo.create_task(status=TaskStatus.ENABLED)
        second = await repo.create_task(status=TaskStatus.ENABLED)
        results = await asyncio.gather(executor.execute_task(first.id), executor.execute_task(second.id))
        reloaded = await TaskRepository(store).get_tasks()
        return results, [reloaded.tasks[first.id], reloaded.tasks[second.id]]

    results, tasks = run(scenario())

    assert all(result.success for result in results)
    for task in tasks:
        assert task.status is TaskStatus.ENABLED
        assert len(task.history.executions) == 1
