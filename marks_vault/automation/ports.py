"""Boundaries between the automation engine and the outside world.

The executor never talks to a browser or to GitHub directly; it is handed
objects satisfying these protocols.
"""
from __future__ import annotations

from typing import List, Optional, Protocol, runtime_checkable

from attrs import define

from marks_vault.automation.models import TimeSchedule


@define(slots=True)
class BookmarkNode:
    id: str
    title: str = ""
    url: Optional[str] = None
    parent_id: Optional[str] = None
    index: int = 0
    date_added: Optional[int] = None
    children: Optional[List["BookmarkNode"]] = None

    @property
    def is_folder(self) -> bool:
        return self.url is None


@define(frozen=True, slots=True)
class GitHubCredentials:
    token: str
    username: Optional[str] = None


@define(frozen=True, slots=True)
class RemoteFile:
    path: str
    content: str
    sha: Optional[str] = None


@define(frozen=True, slots=True)
class RemoteEntry:
    name: str
    path: str
    type: str = "file"
    sha: Optional[str] = None


@define(frozen=True, slots=True)
class AlarmInfo:
    name: str
    next_fire_time: Optional[int] = None
    period_minutes: Optional[float] = None


@runtime_checkable
class BookmarkStore(Protocol):
    async def get_tree(self) -> List[BookmarkNode]: ...

    async def get(self, node_id: str) -> Optional[BookmarkNode]: ...

    async def get_children(self, node_id: str) -> List[BookmarkNode]: ...

    async def create(
        self,
        parent_id: str,
        title: str,
        url: Optional[str] = None,
        index: Optional[int] = None,
    ) -> BookmarkNode: ...

    async def move(self, node_id: str, parent_id: str, index: Optional[int] = None) -> BookmarkNode: ...

    async def update(self, node_id: str, title: Optional[str] = None, url: Optional[str] = None) -> BookmarkNode: ...

    async def remove(self, node_id: str) -> None: ...

    async def remove_tree(self, node_id: str) -> None: ...

    async def count_items(self, folder_id: str) -> int: ...


@runtime_checkable
class CredentialStore(Protocol):
    async def get_github_credentials(self) -> Optional[GitHubCredentials]: ...


@runtime_checkable
class RemoteRepository(Protocol):
    async def validate_credentials(self, credentials: GitHubCredentials) -> str: ...

    async def repo_exists(self, credentials: GitHubCredentials, owner: str, repo: str) -> bool: ...

    async def create_repo(
        self,
        credentials: GitHubCredentials,
        repo: str,
        private: bool = True,
        description: str = "",
    ) -> None: ...

    async def get_file(
        self, credentials: GitHubCredentials, owner: str, repo: str, path: str
    ) -> Optional[RemoteFile]: ...

    async def put_file(
        self,
        credentials: GitHubCredentials,
        owner: str,
        repo: str,
        path: str,
        content: str,
        message: str,
        sha: Optional[str] = None,
    ) -> None: ...

    async def delete_file(
        self,
        credentials: GitHubCredentials,
        owner: str,
        repo: str,
        path: str,
        message: str,
        sha: str,
    ) -> None: ...

    async def list_directory(
        self, credentials: GitHubCredentials, owner: str, repo: str, path: str = ""
    ) -> List[RemoteEntry]: ...


@runtime_checkable
class AlarmService(Protocol):
    """Named one-shot or periodic wake-ups delivered to a single handler."""

    def schedule(self, name: str, schedule: TimeSchedule) -> AlarmInfo: ...

    def clear(self, name: str) -> bool: ...

    def get(self, name: str) -> Optional[AlarmInfo]: ...

    def get_all(self) -> List[AlarmInfo]: ...


__all__ = [
    "BookmarkNode",
    "GitHubCredentials",
    "RemoteFile",
    "RemoteEntry",
    "AlarmInfo",
    "BookmarkStore",
    "CredentialStore",
    "RemoteRepository",
    "AlarmService",
]
