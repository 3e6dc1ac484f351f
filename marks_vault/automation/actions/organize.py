"""Bulk bookmark organisation: move, delete, rename, tag, group by domain and link validation."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, List, Optional
from urllib.parse import urlparse

import httpx
from attrs import define, field

from marks_vault.automation.actions.base import ActionHandler
from marks_vault.automation.bookmarks import OTHER_BOOKMARKS_ID, walk
from marks_vault.automation.errors import InvalidStateError
from marks_vault.automation.models import (
    Action,
    ActionType,
    OrganizeAction,
    OrganizeFilter,
    OrganizeOperation,
    Task,
    TaskExecutionResult,
    now_ms,
)
from marks_vault.automation.ports import BookmarkNode, BookmarkStore

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


@define(slots=True)
class OperationResult:
    operation: str
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(factory=list)
    invalid_urls: List[str] = field(factory=list)

    def summary(self) -> str:
        text = f"{self.operation}: 处理 {self.processed} 项, 失败 {self.failed} 项"
        if self.invalid_urls:
            text += f", 失效链接 {len(self.invalid_urls)} 个"
        return text


def wildcard_to_regex(pattern: str) -> "re.Pattern[str]":
    """``*`` matches any run of characters and ``?`` a single one; matching ignores case."""
    escaped = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(escaped, re.IGNORECASE)


def extract_domain(url: Optional[str]) -> str:
    if not url:
        return ""
    host = urlparse(url).hostname or ""
    return host[4:] if host.startswith("www.") else host


def matches_filter(node: BookmarkNode, filters: Optional[OrganizeFilter], now: Optional[int] = None) -> bool:
    if filters is None:
        return True
    if filters.pattern:
        regex = wildcard_to_regex(filters.pattern)
        if not (regex.search(node.title or "") or regex.search(node.url or "")):
            return False
    if filters.folder and node.parent_id != filters.folder:
        return False
    now = now if now is not None else now_ms()
    added = node.date_added or now
    if filters.older_than is not None and added > now - filters.older_than * DAY_MS:
        return False
    if filters.newer_than is not None and added < now - filters.newer_than * DAY_MS:
        return False
    return True


def render_name(template: str, node: BookmarkNode, index: int) -> str:
    return (
        template.replace("{title}", node.title or "")
        .replace("{domain}", extract_domain(node.url))
        .replace("{index}", str(index))
    )


@define(slots=False)
class OrganizeHandler(ActionHandler):
    """Runs an organize action's sub-operations in order against the bookmark store.

    Each sub-operation reports processed/failed counts. The action succeeds only
    when no item failed; invalid links found by ``validate`` are reported but are
    not failures.
    """

    bookmarks: BookmarkStore
    validate_timeout: float = 10.0
    validate_concurrency: int = 5
    transport: Optional[httpx.AsyncBaseTransport] = None
    action_types = frozenset({ActionType.ORGANIZE})

    async def execute(self, task: Task, action: Action) -> TaskExecutionResult:
        if not isinstance(action, OrganizeAction):
            raise InvalidStateError(f"不支持的任务类型: {action.type.value}")
        started = now_ms()
        results: List[OperationResult] = []
        for operation in action.operations:
            results.append(await self.run_operation(operation))
        details = "; ".join(result.summary() for result in results) or "没有需要执行的整理操作"
        failed = sum(result.failed for result in results)
        if failed:
            errors = [error for result in results for error in result.errors]
            return self._failure(f"整理书签部分失败: {'; '.join(errors[:5])}", details, started)
        return self._success(details, started)

    async def run_operation(self, operation: OrganizeOperation) -> OperationResult:
        handler = getattr(self, f"_op_{operation.operation}", None)
        if handler is None:
            result = OperationResult(operation.operation or "unknown", failed=1)
            result.errors.append(f"不支持的整理操作: {operation.operation}")
            return result
        targets = await self._select(operation.filters)
        result = OperationResult(operation.operation)
        await handler(operation, targets, result)
        logger.info("整理操作完成: %s", result.summary())
        return result

    async def _select(self, filters: Optional[OrganizeFilter]) -> List[BookmarkNode]:
        tree = await self.bookmarks.get_tree()
        now = now_ms()
        return [node for node in walk(tree) if node.url and matches_filter(node, filters, now)]

    async def _apply(self, result: OperationResult, node: BookmarkNode, coro) -> None:
        try:
            await coro
            result.processed += 1
        except Exception as exc:  # pylint: disable=broad-except
            result.failed += 1
            result.errors.append(f"{node.title or node.id}: {exc}")

    # ---- operations ----
    async def _op_move(self, operation: OrganizeOperation, targets: List[BookmarkNode], result: OperationResult) -> None:
        folder = await self.bookmarks.get(operation.target) if operation.target else None
        if folder is None or not folder.is_folder:
            result.failed += 1
            result.errors.append(f"目标文件夹不存在: {operation.target}")
            return
        for node in targets:
            if node.parent_id == folder.id:
                continue
            await self._apply(result, node, self.bookmarks.move(node.id, folder.id))

    async def _op_delete(self, operation: OrganizeOperation, targets: List[BookmarkNode], result: OperationResult) -> None:
        for node in targets:
            await self._apply(result, node, self.bookmarks.remove(node.id))

    async def _op_rename(self, operation: OrganizeOperation, targets: List[BookmarkNode], result: OperationResult) -> None:
        template = operation.new_name or "{title}"
        for index, node in enumerate(targets, start=1):
            await self._apply(result, node, self.bookmarks.update(node.id, title=render_name(template, node, index)))

    async def _op_tag(self, operation: OrganizeOperation, targets: List[BookmarkNode], result: OperationResult) -> None:
        tag = operation.target or operation.new_name
        if not tag:
            result.failed += 1
            result.errors.append("未指定标签")
            return
        prefix = f"[{tag}] "
        for node in targets:
            if (node.title or "").startswith(prefix):
                continue
            await self._apply(result, node, self.bookmarks.update(node.id, title=prefix + (node.title or "")))

    async def _op_organize(self, operation: OrganizeOperation, targets: List[BookmarkNode], result: OperationResult) -> None:
        parent_id = operation.target or OTHER_BOOKMARKS_ID
        parent = await self.bookmarks.get(parent_id)
        if parent is None or not parent.is_folder:
            result.failed += 1
            result.errors.append(f"目标文件夹不存在: {parent_id}")
            return
        folders: Dict[str, str] = {
            child.title: child.id for child in await self.bookmarks.get_children(parent_id) if child.is_folder
        }
        for node in targets:
            domain = extract_domain(node.url) or "其他"
            try:
                if domain not in folders:
                    folders[domain] = (await self.bookmarks.create(parent_id, domain)).id
            except Exception as exc:  # pylint: disable=broad-except
                result.failed += 1
                result.errors.append(f"创建文件夹 {domain} 失败: {exc}")
                continue
            if node.parent_id == folders[domain]:
                continue
            await self._apply(result, node, self.bookmarks.move(node.id, folders[domain]))

    async def _op_validate(self, operation: OrganizeOperation, targets: List[BookmarkNode], result: OperationResult) -> None:
        semaphore = asyncio.Semaphore(max(1, int(self.validate_concurrency)))
        async with httpx.AsyncClient(
            timeout=self.validate_timeout,
            follow_redirects=True,
            transport=self.transport,
        ) as client:

            async def check(node: BookmarkNode) -> None:
                async with semaphore:
                    try:
                        response = await client.head(node.url)
                        valid = response.status_code < 400
                    except httpx.HTTPError:
                        valid = False
                result.processed += 1
                if not valid:
                    result.invalid_urls.append(node.url)

            await asyncio.gather(*(check(node) for node in targets))


__all__ = [
    "OperationResult",
    "OrganizeHandler",
    "extract_domain",
    "matches_filter",
    "render_name",
    "wildcard_to_regex",
]
