"""Action handler interface and helpers shared by the concrete handlers."""
from __future__ import annotations

import abc
import logging
from typing import Any, ClassVar, Dict, FrozenSet, Optional, Tuple

from attrs import define

from marks_vault.automation.errors import CredentialError
from marks_vault.automation.models import Action, ActionType, Task, TaskExecutionResult, now_ms
from marks_vault.automation.ports import CredentialStore, GitHubCredentials, RemoteRepository
from marks_vault.automation.store.interface import KeyValueStoreProtocol

logger = logging.getLogger(__name__)

BACKUP_STATUS_KEY = "backup_status"

MISSING_CREDENTIALS_MESSAGE = "未找到GitHub凭据，请先在同步设置中配置GitHub账号"


@define(init=False)
class ActionHandler(abc.ABC):
    """Base class for the handlers the executor dispatches actions to.

    ``execute`` either returns a :class:`TaskExecutionResult` or raises; the
    executor owns classification, retries and history.
    """

    action_types: ClassVar[FrozenSet[ActionType]] = frozenset()

    def can_handle(self, action: Action) -> bool:
        return action.type in self.action_types

    @abc.abstractmethod
    async def execute(self, task: Task, action: Action) -> TaskExecutionResult:
        raise NotImplementedError

    @staticmethod
    def _success(details: str, started: Optional[int] = None) -> TaskExecutionResult:
        duration = now_ms() - started if started is not None else None
        return TaskExecutionResult(success=True, details=details, duration=duration)

    @staticmethod
    def _failure(error: str, details: Optional[str] = None, started: Optional[int] = None) -> TaskExecutionResult:
        duration = now_ms() - started if started is not None else None
        return TaskExecutionResult(success=False, error=error, details=details, duration=duration)


async def require_credentials(
    credentials: CredentialStore, remote: RemoteRepository
) -> Tuple[GitHubCredentials, str]:
    """Load and validate GitHub credentials, returning them with the login name."""
    creds = await credentials.get_github_credentials()
    if creds is None:
        raise CredentialError(MISSING_CREDENTIALS_MESSAGE)
    try:
        username = await remote.validate_credentials(creds)
    except CredentialError:
        raise
    except Exception as exc:  # pylint: disable=broad-except
        if "401" in str(exc) or "Unauthorized" in str(exc):
            raise CredentialError(f"GitHub凭据无效或已过期: {exc}") from exc
        raise
    return creds, username


async def save_backup_status(store: Optional[KeyValueStoreProtocol], **status: Any) -> None:
    """Persist the outcome of the last backup/restore/push; failures are only logged."""
    if store is None:
        return
    payload: Dict[str, Any] = {key: value for key, value in status.items() if value is not None}
    try:
        await store.set(BACKUP_STATUS_KEY, payload)
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning("保存备份状态失败: %s", exc)


__all__ = [
    "BACKUP_STATUS_KEY",
    "MISSING_CREDENTIALS_MESSAGE",
    "ActionHandler",
    "require_credentials",
    "save_backup_status",
]
