"""Backup and restore of the bookmark tree through a GitHub repository."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from attrs import define

from marks_vault.automation.actions.base import ActionHandler, require_credentials, save_backup_status
from marks_vault.automation.bookmarks import BOOKMARK_BAR_ID, walk
from marks_vault.automation.errors import GitHubAPIError, InvalidStateError, TaskError
from marks_vault.automation.models import (
    Action,
    ActionType,
    BackupAction,
    BackupOperation,
    Task,
    TaskExecutionResult,
    now_ms,
)
from marks_vault.automation.ports import BookmarkNode, BookmarkStore, CredentialStore, RemoteRepository
from marks_vault.automation.store.interface import KeyValueStoreProtocol

logger = logging.getLogger(__name__)

BACKUP_REPO = "marksvault-backups"
BACKUP_VERSION = "1.0"
BACKUP_PREFIX = "bookmark_backup_"
BOOKMARK_BAR_TITLES = ("书签栏", "Bookmarks Bar", "Bookmarks bar", "Bookmark Bar")


class RestoreError(TaskError):
    pass


def node_to_dict(node: BookmarkNode) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": node.id,
        "title": node.title,
        "index": node.index,
        "isFolder": node.is_folder,
    }
    if node.url is not None:
        data["url"] = node.url
    if node.parent_id is not None:
        data["parentId"] = node.parent_id
    if node.date_added is not None:
        data["dateAdded"] = node.date_added
    if node.children is not None:
        data["children"] = [node_to_dict(child) for child in node.children]
    return data


def build_backup_document(tree: Sequence[BookmarkNode], source: str = "MarksVault") -> Dict[str, Any]:
    total_bookmarks = 0
    total_folders = 0
    for node in walk(tree):
        if node.parent_id is None:
            continue
        if node.is_folder:
            total_folders += 1
        else:
            total_bookmarks += 1
    return {
        "version": BACKUP_VERSION,
        "timestamp": now_ms(),
        "source": source,
        "bookmarks": [node_to_dict(node) for node in tree],
        "metadata": {"totalBookmarks": total_bookmarks, "totalFolders": total_folders},
    }


def backup_file_name(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now()
    return f"{BACKUP_PREFIX}{moment:%Y%m%d%H%M%S}.json"


def select_restore_items(document: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Pick the bookmark-bar contents out of a parsed backup document."""
    roots = document.get("bookmarks")
    if not isinstance(roots, list):
        raise RestoreError("备份文件格式不正确")
    for root in roots:
        for item in root.get("children") or []:
            if item.get("title") in BOOKMARK_BAR_TITLES and item.get("children"):
                return list(item["children"])
    first = roots[0] if roots else {}
    first_children = first.get("children") or []
    if first_children and first_children[0].get("children"):
        return list(first_children[0]["children"])
    return list(first_children or roots)


def _is_folder_item(item: Dict[str, Any]) -> bool:
    if "isFolder" in item:
        return bool(item["isFolder"])
    return not item.get("url")


@define(slots=False)
class BackupHandler(ActionHandler):
    """Uploads JSON snapshots of the tree and restores the bookmark bar from them."""

    bookmarks: BookmarkStore
    credentials: CredentialStore
    remote: RemoteRepository
    status_store: Optional[KeyValueStoreProtocol] = None
    repo_name: str = BACKUP_REPO
    action_types = frozenset({ActionType.BACKUP})

    async def execute(self, task: Task, action: Action) -> TaskExecutionResult:
        if not isinstance(action, BackupAction):
            raise InvalidStateError(f"不支持的任务类型: {action.type.value}")
        if action.operation is BackupOperation.RESTORE:
            return await self.restore(action)
        return await self.backup(action)

    # ---- backup ----
    async def backup(self, action: BackupAction) -> TaskExecutionResult:
        started = now_ms()
        try:
            creds, username = await require_credentials(self.credentials, self.remote)
            if not await self.remote.repo_exists(creds, username, self.repo_name):
                await self.remote.create_repo(creds, self.repo_name, private=True, description="MarksVault书签备份")
            document = build_backup_document(await self.bookmarks.get_tree())
            moment = datetime.now()
            path = backup_file_name(moment)
            message = action.options.commit_message or f"添加书签备份 - {moment:%Y-%m-%d %H:%M:%S}"
            await self.remote.put_file(
                creds,
                username,
                self.repo_name,
                path,
                json.dumps(document, ensure_ascii=False, indent=2),
                message,
            )
        except Exception as exc:
            await save_backup_status(self.status_store, lastOperationStatus="failed", errorMessage=str(exc))
            raise
        total = document["metadata"]["totalBookmarks"]
        await save_backup_status(
            self.status_store,
            lastBackupTime=now_ms(),
            lastBackupFilePath=path,
            lastOperationStatus="success",
        )
        logger.info("书签备份完成: %s (%d 个书签)", path, total)
        return self._success(f"备份成功: {path}，共 {total} 个书签", started)

    # ---- restore ----
    async def restore(self, action: BackupAction) -> TaskExecutionResult:
        started = now_ms()
        try:
            creds, username = await require_credentials(self.credentials, self.remote)
            if not await self.remote.repo_exists(creds, username, self.repo_name):
                raise RestoreError("备份存储库不存在，请先进行备份")
            path = action.options.backup_file_path or await self._latest_backup_path(creds, username)
            remote_file = await self.remote.get_file(creds, username, self.repo_name, path)
            if remote_file is None:
                raise GitHubAPIError(f"备份文件 not found: {path}", status_code=404)
            try:
                document = json.loads(remote_file.content)
            except ValueError as exc:
                raise RestoreError(f"备份文件格式不正确: {exc}") from exc
            items = select_restore_items(document)
            if not items:
                raise RestoreError("备份数据中找不到可恢复的书签")
            bar = await self._find_bookmark_bar()
            restored = await self._replace_children(bar, items)
        except Exception as exc:
            await save_backup_status(self.status_store, lastOperationStatus="failed", errorMessage=str(exc))
            raise
        await save_backup_status(self.status_store, lastRestoreTime=now_ms(), lastOperationStatus="success")
        logger.info("书签恢复完成: %s (%d 项)", path, restored)
        return self._success(f"恢复成功: {path}，共恢复 {restored} 项", started)

    async def _latest_backup_path(self, creds, username: str) -> str:
        entries = await self.remote.list_directory(creds, username, self.repo_name)
        names = sorted(
            entry.name
            for entry in entries
            if entry.name.startswith(BACKUP_PREFIX) and entry.name.endswith(".json")
        )
        if not names:
            raise RestoreError("未找到任何备份文件")
        return names[-1]

    async def _find_bookmark_bar(self) -> BookmarkNode:
        tree = await self.bookmarks.get_tree()
        candidates = [child for root in tree for child in (root.children or [])]
        for node in candidates:
            if node.id == BOOKMARK_BAR_ID:
                return node
        for node in candidates:
            if node.title in BOOKMARK_BAR_TITLES:
                return node
        raise RestoreError("找不到书签栏，无法恢复书签")

    async def _replace_children(self, bar: BookmarkNode, items: List[Dict[str, Any]]) -> int:
        snapshot = [node_to_dict(child) for child in bar.children or []]
        try:
            await self._clear(bar.id)
            return await self._create_items(bar.id, items)
        except BaseException:
            logger.warning("书签恢复失败，正在回滚书签栏")
            try:
                await self._clear(bar.id)
                await self._create_items(bar.id, snapshot)
            except Exception:  # pylint: disable=broad-except
                logger.exception("书签栏回滚失败")
            raise

    async def _clear(self, folder_id: str) -> None:
        for child in await self.bookmarks.get_children(folder_id):
            await self.bookmarks.remove_tree(child.id)

    async def _create_items(self, parent_id: str, items: List[Dict[str, Any]]) -> int:
        created = 0
        for item in items:
            title = str(item.get("title") or "")
            if _is_folder_item(item):
                folder = await self.bookmarks.create(parent_id, title)
                created += 1 + await self._create_items(folder.id, item.get("children") or [])
            elif item.get("url"):
                await self.bookmarks.create(parent_id, title, url=str(item["url"]))
                created += 1
        return created


__all__ = [
    "BACKUP_REPO",
    "BACKUP_PREFIX",
    "BOOKMARK_BAR_TITLES",
    "RestoreError",
    "BackupHandler",
    "backup_file_name",
    "build_backup_document",
    "node_to_dict",
    "select_restore_items",
]
