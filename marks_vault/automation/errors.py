"""Exceptions raised by the automation engine."""
from __future__ import annotations

from typing import Optional


class TaskError(Exception):
    """Base exception for all automation errors."""

    pass


class TaskNotFoundError(TaskError):
    """Raised when a task ID is absent from the task storage."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"未找到ID为 {task_id} 的任务")


class InvalidStateError(TaskError):
    """Raised when a task's status or trigger disallows the requested operation."""

    pass


class CredentialError(TaskError):
    """Raised when remote credentials are missing, invalid or expired."""

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        self.details = details or "请打开扩展的同步页面，重新完成GitHub账号授权后再执行此任务"
        super().__init__(message)


class TransientError(TaskError):
    """Network, timeout or rate-limit class failure that may succeed on retry."""

    pass


class StorageError(TaskError):
    """Raised when the key-value store cannot be read or written."""

    pass


class GitHubAPIError(TaskError):
    """Non-success response from the remote repository API."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


__all__ = [
    "TaskError",
    "TaskNotFoundError",
    "InvalidStateError",
    "CredentialError",
    "TransientError",
    "StorageError",
    "GitHubAPIError",
]
