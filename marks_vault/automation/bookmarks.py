"""In-memory bookmark tree mirroring the browser's layout.

Node "0" is the invisible root; "1" is the bookmark bar and "2" holds other
bookmarks. Returned nodes are copies, so callers can't mutate the tree.
"""
from __future__ import annotations

import itertools
from typing import Dict, Iterable, List, Optional

from attrs import define, field

from marks_vault.automation.errors import TaskError
from marks_vault.automation.models import now_ms
from marks_vault.automation.ports import BookmarkNode

ROOT_ID = "0"
BOOKMARK_BAR_ID = "1"
OTHER_BOOKMARKS_ID = "2"


class BookmarkStoreError(TaskError):
    pass


@define(slots=True)
class _Entry:
    id: str
    title: str
    url: Optional[str]
    parent_id: Optional[str]
    date_added: int
    children: List[str] = field(factory=list)


@define(slots=False)
class MemoryBookmarkStore:
    _nodes: Dict[str, _Entry] = field(factory=dict, init=False)
    _ids: "itertools.count[int]" = field(factory=lambda: itertools.count(100), init=False)

    def __attrs_post_init__(self) -> None:
        stamp = now_ms()
        self._nodes[ROOT_ID] = _Entry(ROOT_ID, "", None, None, stamp, [BOOKMARK_BAR_ID, OTHER_BOOKMARKS_ID])
        self._nodes[BOOKMARK_BAR_ID] = _Entry(BOOKMARK_BAR_ID, "Bookmarks Bar", None, ROOT_ID, stamp)
        self._nodes[OTHER_BOOKMARKS_ID] = _Entry(OTHER_BOOKMARKS_ID, "Other Bookmarks", None, ROOT_ID, stamp)

    # ---- reads ----
    async def get_tree(self) -> List[BookmarkNode]:
        return [self._build(ROOT_ID, recursive=True)]

    async def get(self, node_id: str) -> Optional[BookmarkNode]:
        if node_id not in self._nodes:
            return None
        return self._build(node_id, recursive=False)

    async def get_children(self, node_id: str) -> List[BookmarkNode]:
        entry = self._require(node_id)
        return [self._build(child, recursive=False) for child in entry.children]

    async def count_items(self, folder_id: str) -> int:
        entry = self._require(folder_id)
        total = 0
        for child_id in entry.children:
            child = self._nodes[child_id]
            total += 1 if child.url is not None else await self.count_items(child_id)
        return total

    # ---- writes ----
    async def create(
        self,
        parent_id: str,
        title: str,
        url: Optional[str] = None,
        index: Optional[int] = None,
        date_added: Optional[int] = None,
    ) -> BookmarkNode:
        parent = self._require_folder(parent_id)
        node_id = str(next(self._ids))
        while node_id in self._nodes:
            node_id = str(next(self._ids))
        self._nodes[node_id] = _Entry(node_id, title, url, parent_id, date_added or now_ms())
        self._insert(parent, node_id, index)
        return self._build(node_id, recursive=False)

    async def move(self, node_id: str, parent_id: str, index: Optional[int] = None) -> BookmarkNode:
        entry = self._require_mutable(node_id)
        target = self._require_folder(parent_id)
        cursor: Optional[str] = parent_id
        while cursor is not None:
            if cursor == node_id:
                raise BookmarkStoreError(f"不能将文件夹移动到其自身内部: {node_id}")
            cursor = self._nodes[cursor].parent_id
        self._nodes[entry.parent_id].children.remove(node_id)
        entry.parent_id = parent_id
        self._insert(target, node_id, index)
        return self._build(node_id, recursive=False)

    async def update(self, node_id: str, title: Optional[str] = None, url: Optional[str] = None) -> BookmarkNode:
        entry = self._require_mutable(node_id)
        if title is not None:
            entry.title = title
        if url is not None:
            if entry.url is None:
                raise BookmarkStoreError(f"文件夹不能设置URL: {node_id}")
            entry.url = url
        return self._build(node_id, recursive=False)

    async def remove(self, node_id: str) -> None:
        entry = self._require_mutable(node_id)
        if entry.url is None and entry.children:
            raise BookmarkStoreError(f"文件夹不为空: {node_id}")
        self._detach(entry)

    async def remove_tree(self, node_id: str) -> None:
        entry = self._require_mutable(node_id)
        self._detach(entry)

    # ---- internal ----
    def _require(self, node_id: str) -> _Entry:
        entry = self._nodes.get(node_id)
        if entry is None:
            raise BookmarkStoreError(f"未找到书签节点: {node_id}")
        return entry

    def _require_folder(self, node_id: str) -> _Entry:
        entry = self._require(node_id)
        if entry.url is not None:
            raise BookmarkStoreError(f"目标不是文件夹: {node_id}")
        return entry

    def _require_mutable(self, node_id: str) -> _Entry:
        if node_id in (ROOT_ID, BOOKMARK_BAR_ID, OTHER_BOOKMARKS_ID):
            raise BookmarkStoreError(f"不能修改根文件夹: {node_id}")
        return self._require(node_id)

    def _insert(self, parent: _Entry, node_id: str, index: Optional[int]) -> None:
        if index is None or index >= len(parent.children):
            parent.children.append(node_id)
        else:
            parent.children.insert(max(0, index), node_id)

    def _detach(self, entry: _Entry) -> None:
        self._nodes[entry.parent_id].children.remove(entry.id)
        stack = [entry.id]
        while stack:
            current = self._nodes.pop(stack.pop())
            stack.extend(current.children)

    def _build(self, node_id: str, recursive: bool) -> BookmarkNode:
        entry = self._nodes[node_id]
        index = 0
        if entry.parent_id is not None:
            index = self._nodes[entry.parent_id].children.index(node_id)
        children = None
        if entry.url is None:
            children = [self._build(child, True) for child in entry.children] if recursive else []
        return BookmarkNode(
            id=entry.id,
            title=entry.title,
            url=entry.url,
            parent_id=entry.parent_id,
            index=index,
            date_added=entry.date_added,
            children=children,
        )


def walk(nodes: Iterable[BookmarkNode]) -> Iterable[BookmarkNode]:
    """Depth-first iteration over a bookmark tree."""
    for node in nodes:
        yield node
        if node.children:
            yield from walk(node.children)


__all__ = [
    "ROOT_ID",
    "BOOKMARK_BAR_ID",
    "OTHER_BOOKMARKS_ID",
    "BookmarkStoreError",
    "MemoryBookmarkStore",
    "walk",
]
