"""Tests for the task repository."""
from __future__ import annotations

import asyncio

import pytest

from marks_vault.automation.errors import StorageError, TaskNotFoundError
from marks_vault.automation.models import (
    ManualTrigger,
    TaskExecutionResult,
    TaskStatus,
    create_event_trigger,
)
from marks_vault.automation.repository import (
    SYSTEM_BOOKMARKS_BACKUP,
    SYSTEM_BOOKMARKS_RESTORE,
    TASKS_STORAGE_KEY,
    TaskRepository,
    is_system_task_id,
)
from marks_vault.automation.store.memory import MemoryKeyValueStore
from marks_vault.automation.tests.fakes import FlakyStore, YieldingStore


def run(coro):
    return asyncio.run(coro)


def test_first_read_persists_empty_storage() -> None:
    async def scenario():
        store = MemoryKeyValueStore()
        repo = TaskRepository(store)
        storage = await repo.get_tasks()
        return storage, await store.get(TASKS_STORAGE_KEY)

    storage, persisted = run(scenario())

    assert storage.tasks == {}
    assert persisted == {"tasks": {}, "lastUpdated": storage.last_updated}


def test_create_then_get_returns_equal_task() -> None:
    async def scenario():
        store = MemoryKeyValueStore()
        repo = TaskRepository(store)
        created = await repo.create_task(id="ignored", name="每日备份", status=TaskStatus.ENABLED)
        fetched = await repo.get_task_by_id(created.id)
        reloaded = await TaskRepository(store).get_task_by_id(created.id)
        return created, fetched, reloaded

    created, fetched, reloaded = run(scenario())

    assert created.id.startswith("task_")
    assert created.id != "ignored"
    assert fetched == created
    assert reloaded == created


def test_ids_are_unique_within_the_same_millisecond() -> None:
    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        return [await repo.create_task(name=f"t{i}") for i in range(5)]

    tasks = run(scenario())

    assert len({task.id for task in tasks}) == 5


def test_update_merges_and_keeps_id() -> None:
    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        task = await repo.create_task(name="a")
        updated = await repo.update_task(task.id, id="other", name="b", trigger=ManualTrigger())
        return task, updated, await repo.get_tasks()

    task, updated, storage = run(scenario())

    assert updated.id == task.id
    assert updated.name == "b"
    assert updated.created_at == task.created_at
    assert updated.updated_at >= task.updated_at
    assert isinstance(updated.trigger, ManualTrigger)
    assert list(storage.tasks) == [task.id]


def test_missing_task_raises_not_found() -> None:
    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        for call in (
            repo.get_task_by_id("nope"),
            repo.update_task("nope", name="x"),
            repo.delete_task("nope"),
        ):
            with pytest.raises(TaskNotFoundError):
                await call

    run(scenario())


def test_delete_removes_task() -> None:
    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        task = await repo.create_task(name="a")
        await repo.delete_task(task.id)
        return await repo.get_tasks()

    assert run(scenario()).tasks == {}


def test_history_is_capped_and_drives_status() -> None:
    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        task = await repo.create_task(status=TaskStatus.ENABLED)
        for index in range(25):
            task = await repo.update_task_execution_history(
                task.id, TaskExecutionResult(success=True, timestamp=index)
            )
        after_success = task
        failed = await repo.update_task_execution_history(task.id, TaskExecutionResult.failure("boom"))
        return after_success, failed

    after_success, failed = run(scenario())

    assert len(after_success.history.executions) == 20
    assert after_success.history.executions[0].timestamp == 24
    assert after_success.history.last_execution.timestamp == 24
    assert after_success.status is TaskStatus.ENABLED
    assert failed.status is TaskStatus.FAILED
    assert failed.history.last_execution.error == "boom"


def test_status_helpers_and_filtering() -> None:
    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        first = await repo.create_task(name="a")
        second = await repo.create_task(name="b")
        await repo.enable_task(first.id)
        enabled = await repo.get_tasks_by_status(TaskStatus.ENABLED)
        await repo.disable_task(first.id)
        disabled = await repo.get_tasks_by_status(TaskStatus.DISABLED)
        everything = await repo.get_tasks_by_status()
        return first, second, enabled, disabled, everything

    first, second, enabled, disabled, everything = run(scenario())

    assert [task.id for task in enabled] == [first.id]
    assert {task.id for task in disabled} == {first.id, second.id}
    assert len(everything) == 2


def test_failed_write_raises_storage_error_and_drops_cache() -> None:
    async def scenario():
        store = FlakyStore()
        repo = TaskRepository(store)
        task = await repo.create_task(name="original")
        generation = repo.generation
        store.fail_writes = 1
        with pytest.raises(StorageError):
            await repo.update_task(task.id, name="changed")
        assert repo.generation == generation + 1
        return await repo.get_task_by_id(task.id)

    assert run(scenario()).name == "original"


def test_corrupt_storage_raises_storage_error() -> None:
    async def scenario():
        store = MemoryKeyValueStore()
        await store.set(TASKS_STORAGE_KEY, {"tasks": {"a": {"id": "a"}}})
        with pytest.raises(StorageError):
            await TaskRepository(store).get_tasks()

    run(scenario())


def test_listeners_see_creation_status_and_trigger_changes() -> None:
    events = []

    async def listener(task, previous):
        events.append((task.id if task else None, previous.status if previous else None))

    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        repo.add_listener(listener)
        task = await repo.create_task(name="a")
        await repo.update_task(task.id, name="renamed")
        await repo.enable_task(task.id)
        await repo.update_task(task.id, trigger=create_event_trigger("bookmark_created"))
        await repo.update_task(task.id, notify=False, status=TaskStatus.DISABLED)
        await repo.delete_task(task.id)
        return task

    task = run(scenario())

    assert events == [
        (task.id, None),
        (task.id, TaskStatus.DISABLED),
        (task.id, TaskStatus.ENABLED),
        (None, TaskStatus.DISABLED),
    ]


def test_listener_errors_do_not_fail_the_write() -> None:
    async def broken(task, previous):
        raise RuntimeError("listener exploded")

    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        repo.add_listener(broken)
        task = await repo.create_task(name="a")
        return await repo.enable_task(task.id)

    assert run(scenario()).status is TaskStatus.ENABLED


def test_system_tasks_are_created_once() -> None:
    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        first = await repo.ensure_system_tasks()
        await repo.update_task(SYSTEM_BOOKMARKS_BACKUP, name="我的备份")
        second = await repo.ensure_system_tasks()
        return first, second, await repo.get_task_by_id(SYSTEM_BOOKMARKS_BACKUP)

    first, second, backup = run(scenario())

    assert {task.id for task in first} == {SYSTEM_BOOKMARKS_BACKUP, SYSTEM_BOOKMARKS_RESTORE}
    assert all(task.is_manual and task.status is TaskStatus.ENABLED for task in first)
    assert second == []
    assert backup.name == "我的备份"
    assert is_system_task_id(SYSTEM_BOOKMARKS_RESTORE)
    assert not is_system_task_id("task_1")


def test_clear_all_tasks() -> None:
    async def scenario():
        repo = TaskRepository(MemoryKeyValueStore())
        await repo.create_task(name="a")
        await repo.clear_all_tasks()
        return await repo.get_tasks()

    assert run(scenario()).tasks == {}


def test_interleaved_writes_keep_every_change() -> None:
    async def scenario():
        store = YieldingStore()
        repo = TaskRepository(store)
        first = await repo.create_task(name="a")
        second = await repo.create_task(name="b")
        await asyncio.gather(repo.enable_task(first.id), repo.enable_task(second.id))
        reloaded = await TaskRepository(store).get_tasks()
        return first, second, await repo.get_tasks(), reloaded

    first, second, cached, reloaded = run(scenario())

    for storage in (cached, reloaded):
        assert storage.tasks[first.id].status is TaskStatus.ENABLED
        assert storage.tasks[second.id].status is TaskStatus.ENABLED


def test_status_strings_are_converted() -> None:
    async def scenario():
        store = MemoryKeyValueStore()
        repo = TaskRepository(store)
        task = await repo.create_task(status="enabled")
        updated = await repo.update_task(task.id, status="disabled")
        return task, updated, await TaskRepository(store).get_task_by_id(task.id)

    task, updated, reloaded = run(scenario())

    assert task.status is TaskStatus.ENABLED
    assert updated.status is TaskStatus.DISABLED
    assert reloaded.status is TaskStatus.DISABLED
