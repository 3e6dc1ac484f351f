"""Tests for the organize action handler."""
from __future__ import annotations

import asyncio

import httpx
import pytest

from marks_vault.automation.actions.organize import (
    OrganizeHandler,
    extract_domain,
    render_name,
    wildcard_to_regex,
)
from marks_vault.automation.bookmarks import BOOKMARK_BAR_ID, OTHER_BOOKMARKS_ID, MemoryBookmarkStore, walk
from marks_vault.automation.errors import InvalidStateError
from marks_vault.automation.models import (
    BackupAction,
    OrganizeAction,
    OrganizeFilter,
    OrganizeOperation,
    create_default_task,
    now_ms,
)
from marks_vault.automation.ports import BookmarkNode

DAY_MS = 24 * 60 * 60 * 1000


def run(coro):
    return asyncio.run(coro)


async def seeded_store():
    store = MemoryBookmarkStore()
    await store.create(BOOKMARK_BAR_ID, "GitHub", url="https://github.com/marks")
    await store.create(BOOKMARK_BAR_ID, "Python Docs", url="https://www.docs.python.org/3/")
    await store.create(BOOKMARK_BAR_ID, "Old Blog", url="https://example.com/old", date_added=now_ms() - 90 * DAY_MS)
    archive = await store.create(OTHER_BOOKMARKS_ID, "Archive")
    return store, archive


async def organize(store, *operations, transport=None):
    handler = OrganizeHandler(store, transport=transport)
    return await handler.execute(create_default_task("task_1"), OrganizeAction(operations=operations))


async def bookmarks_by_title(store):
    return {node.title: node for node in walk(await store.get_tree()) if node.url}


def test_wildcard_and_domain_helpers() -> None:
    assert wildcard_to_regex("*GITHUB*").search("https://github.com/x")
    assert wildcard_to_regex("a?c").fullmatch("abc")
    assert not wildcard_to_regex("a.c").fullmatch("abc")
    assert extract_domain("https://www.docs.python.org/3/") == "docs.python.org"
    assert extract_domain(None) == ""
    node = BookmarkNode(id="1", title="Docs", url="https://python.org/x")
    assert render_name("{index}. {title} ({domain})", node, 3) == "3. Docs (python.org)"


def test_move_matching_bookmarks_into_target_folder() -> None:
    async def scenario():
        store, archive = await seeded_store()
        result = await organize(
            store,
            OrganizeOperation(operation="move", filters=OrganizeFilter(pattern="*github*"), target=archive.id),
        )
        return result, await bookmarks_by_title(store), archive

    result, nodes, archive = run(scenario())

    assert result.success
    assert "move: 处理 1 项, 失败 0 项" in result.details
    assert nodes["GitHub"].parent_id == archive.id
    assert nodes["Python Docs"].parent_id == BOOKMARK_BAR_ID


def test_move_without_existing_target_fails() -> None:
    async def scenario():
        store, _ = await seeded_store()
        return await organize(store, OrganizeOperation(operation="move", target="999"))

    result = run(scenario())

    assert not result.success
    assert "目标文件夹不存在" in result.error


def test_delete_respects_age_filter() -> None:
    async def scenario():
        store, _ = await seeded_store()
        result = await organize(
            store, OrganizeOperation(operation="delete", filters=OrganizeFilter(older_than=30))
        )
        return result, await bookmarks_by_title(store)

    result, nodes = run(scenario())

    assert result.success
    assert set(nodes) == {"GitHub", "Python Docs"}


def test_rename_and_tag_are_applied_in_order() -> None:
    async def scenario():
        store, _ = await seeded_store()
        only_bar = OrganizeFilter(folder=BOOKMARK_BAR_ID, newer_than=30)
        result = await organize(
            store,
            OrganizeOperation(operation="rename", filters=only_bar, new_name="{index}-{domain}"),
            OrganizeOperation(operation="tag", filters=only_bar, target="dev"),
            OrganizeOperation(operation="tag", filters=only_bar, target="dev"),
        )
        return result, sorted(await bookmarks_by_title(store))

    result, titles = run(scenario())

    assert result.success
    assert titles == ["Old Blog", "[dev] 1-github.com", "[dev] 2-docs.python.org"]


def test_organize_groups_by_domain_under_other_bookmarks() -> None:
    async def scenario():
        store, _ = await seeded_store()
        result = await organize(store, OrganizeOperation(operation="organize"))
        folders = {node.title: node for node in await store.get_children(OTHER_BOOKMARKS_ID)}
        return result, folders, await bookmarks_by_title(store)

    result, folders, nodes = run(scenario())

    assert result.success
    assert {"Archive", "github.com", "docs.python.org", "example.com"} <= set(folders)
    assert nodes["GitHub"].parent_id == folders["github.com"].id
    assert nodes["Old Blog"].parent_id == folders["example.com"].id


def test_validate_reports_dead_links_without_changes() -> None:
    def responder(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        if request.url.host == "example.com":
            return httpx.Response(404)
        if request.url.host == "github.com":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200)

    async def scenario():
        store, _ = await seeded_store()
        before = await bookmarks_by_title(store)
        result = await organize(store, OrganizeOperation(operation="validate"), transport=httpx.MockTransport(responder))
        return result, before, await bookmarks_by_title(store)

    result, before, after = run(scenario())

    assert result.success
    assert "validate: 处理 3 项, 失败 0 项, 失效链接 2 个" in result.details
    assert before == after


def test_unknown_operation_fails_but_others_still_run() -> None:
    async def scenario():
        store, _ = await seeded_store()
        result = await organize(
            store,
            OrganizeOperation(operation="shuffle"),
            OrganizeOperation(operation="tag", target="x"),
        )
        return result, await bookmarks_by_title(store)

    result, nodes = run(scenario())

    assert not result.success
    assert "不支持的整理操作: shuffle" in result.error
    assert all(title.startswith("[x] ") for title in nodes)


def test_handler_rejects_foreign_action_types() -> None:
    handler = OrganizeHandler(MemoryBookmarkStore())

    with pytest.raises(InvalidStateError, match="backup"):
        run(handler.execute(create_default_task("task_1"), BackupAction()))
