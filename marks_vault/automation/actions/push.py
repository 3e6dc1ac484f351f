"""Push bookmarks to a repository as a Netscape HTML file."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Union

from attrs import define

from marks_vault.automation.actions.base import ActionHandler, require_credentials, save_backup_status
from marks_vault.automation.actions.html import render_netscape_html
from marks_vault.automation.errors import InvalidStateError
from marks_vault.automation.models import (
    Action,
    ActionType,
    BookmarkSelection,
    PushAction,
    SelectivePushAction,
    Task,
    TaskExecutionResult,
    now_ms,
)
from marks_vault.automation.ports import BookmarkNode, BookmarkStore, CredentialStore, RemoteRepository
from marks_vault.automation.store.interface import KeyValueStoreProtocol

logger = logging.getLogger(__name__)

NO_SELECTION_MESSAGE = "未选择任何书签"


def push_file_path(folder_path: str, moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now()
    file_name = f"bookmarks_{moment:%Y%m%d}.html"
    folder_path = (folder_path or "").strip("/")
    return f"{folder_path}/{file_name}" if folder_path else file_name


def selections_to_nodes(selections: Sequence[BookmarkSelection]) -> List[BookmarkNode]:
    """Turn user selections into render nodes, honouring ``custom_order`` where given."""
    ordered = sorted(
        enumerate(selections),
        key=lambda pair: (pair[1].custom_order if pair[1].custom_order is not None else pair[0], pair[0]),
    )
    nodes = []
    for index, (_, item) in enumerate(ordered):
        if item.is_folder:
            nodes.append(
                BookmarkNode(id=item.id, title=item.title, index=index, children=selections_to_nodes(item.children))
            )
        elif item.url:
            nodes.append(BookmarkNode(id=item.id, title=item.title, url=item.url, index=index))
    return nodes


@define(slots=False)
class PushHandler(ActionHandler):
    """Handles both full pushes and pushes of an explicit bookmark selection."""

    bookmarks: BookmarkStore
    credentials: CredentialStore
    remote: RemoteRepository
    status_store: Optional[KeyValueStoreProtocol] = None
    action_types = frozenset({ActionType.PUSH, ActionType.SELECTIVE_PUSH})

    async def execute(self, task: Task, action: Action) -> TaskExecutionResult:
        if not isinstance(action, (PushAction, SelectivePushAction)):
            raise InvalidStateError(f"不支持的任务类型: {action.type.value}")
        started = now_ms()
        if isinstance(action, SelectivePushAction):
            if not action.options.selections:
                raise InvalidStateError(NO_SELECTION_MESSAGE)
            nodes = selections_to_nodes(action.options.selections)
        else:
            tree = await self.bookmarks.get_tree()
            nodes = [child for root in tree for child in (root.children or [])]
        path = await self._push(action, nodes)
        return self._success(f"推送成功: {action.options.repo_name}/{path}", started)

    async def _push(self, action: Union[PushAction, SelectivePushAction], nodes: List[BookmarkNode]) -> str:
        options = action.options
        try:
            creds, username = await require_credentials(self.credentials, self.remote)
            if not await self.remote.repo_exists(creds, username, options.repo_name):
                await self.remote.create_repo(creds, options.repo_name, private=True)
            moment = datetime.now()
            path = push_file_path(options.folder_path, moment)
            existing = await self.remote.get_file(creds, username, options.repo_name, path)
            await self.remote.put_file(
                creds,
                username,
                options.repo_name,
                path,
                render_netscape_html(nodes),
                options.commit_message or f"推送书签 - {moment:%Y-%m-%d %H:%M:%S}",
                sha=existing.sha if existing else None,
            )
        except Exception as exc:
            await save_backup_status(self.status_store, lastOperationStatus="failed", errorMessage=str(exc))
            raise
        await save_backup_status(
            self.status_store,
            lastBackupTime=now_ms(),
            lastBackupFilePath=path,
            lastOperationStatus="success",
        )
        logger.info("书签已推送到 %s/%s", options.repo_name, path)
        return path


__all__ = [
    "NO_SELECTION_MESSAGE",
    "PushHandler",
    "push_file_path",
    "selections_to_nodes",
]
