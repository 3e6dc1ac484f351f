"""Runtime glue that wires the automation engine into a host process."""
from __future__ import annotations

import logging
from contextlib import suppress
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from omegaconf import OmegaConf

from marks_vault.automation.actions import (
    ActionHandler,
    BackupHandler,
    CustomActionHandler,
    OrganizeHandler,
    PushHandler,
)
from marks_vault.automation.alarms import APSchedulerAlarmService
from marks_vault.automation.bookmarks import MemoryBookmarkStore
from marks_vault.automation.credentials import KeyValueCredentialStore
from marks_vault.automation.dispatcher import TriggerDispatcher
from marks_vault.automation.executor import ExecutorConfig, TaskExecutor
from marks_vault.automation.github import GITHUB_API, GitHubClient
from marks_vault.automation.models import EventType, TaskExecutionResult
from marks_vault.automation.ports import BookmarkStore, CredentialStore, RemoteRepository
from marks_vault.automation.repository import TaskRepository
from marks_vault.automation.store import (
    DuckDBKeyValueStore,
    KeyValueStoreProtocol,
    MemoryKeyValueStore,
    RetryingKeyValueStore,
)

logger = logging.getLogger(__name__)


def _to_dict(data: Any) -> Dict[str, Any]:
    if data is None:
        return {}
    if isinstance(data, dict):
        return data
    if isinstance(data, Mapping):
        return dict(data)
    try:
        return OmegaConf.to_container(data, resolve=True)  # type: ignore[arg-type]
    except ValueError:
        return {}


class AutomationService:
    """Builds the store, repository, handlers, executor, alarms and dispatcher from config.

    Collaborators that talk to the browser or GitHub can be injected; the
    defaults are an in-memory bookmark tree, a KV-backed credential store and
    the httpx GitHub client.
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        store: Optional[KeyValueStoreProtocol] = None,
        bookmarks: Optional[BookmarkStore] = None,
        credentials: Optional[CredentialStore] = None,
        remote: Optional[RemoteRepository] = None,
        alarms: Optional[APSchedulerAlarmService] = None,
    ) -> None:
        cfg = _to_dict(config)

        self.auto_start = bool(cfg.get("auto_start", True))
        self.system_tasks = bool(cfg.get("system_tasks", True))

        self.raw_store = store if store is not None else self._create_store(_to_dict(cfg.get("store")))
        self.store = self._wrap_store(self.raw_store, _to_dict(cfg.get("store")))
        self.bookmarks = bookmarks if bookmarks is not None else MemoryBookmarkStore()

        github_cfg = _to_dict(cfg.get("github"))
        self.credentials = credentials if credentials is not None else KeyValueCredentialStore(
            self.store,
            token_env=github_cfg.get("token_env", "GITHUB_TOKEN"),
        )
        self.remote = remote if remote is not None else GitHubClient(
            base_url=str(github_cfg.get("base_url") or GITHUB_API),
            timeout=float(github_cfg.get("timeout", 30.0)),
        )

        self.repository = TaskRepository(self.store)
        self.handlers, self.custom_actions = self._create_handlers(_to_dict(cfg.get("organize")))
        self.executor = TaskExecutor(
            self.repository,
            self.handlers,
            config=self._executor_config(_to_dict(cfg.get("executor"))),
        )

        alarms_cfg = _to_dict(cfg.get("alarms"))
        if alarms is None and alarms_cfg.get("enabled", True):
            alarms = APSchedulerAlarmService(timezone=alarms_cfg.get("timezone"))
        self.alarms = alarms
        self.dispatcher = TriggerDispatcher(self.repository, self.executor, alarms=self.alarms)
        if self.alarms is not None:
            self.alarms.set_handler(self.dispatcher.handle_alarm)

        self._initialized = False

    @classmethod
    def from_global_config(cls, **overrides: Any) -> "AutomationService":
        from marks_vault.utils.hydra_config.init import conf  # pylint: disable=import-outside-toplevel

        return cls(getattr(conf, "automation", None), **overrides)

    async def ensure_initialized(self) -> None:
        if self._initialized:
            return
        await self.repository.init()
        if self.system_tasks:
            await self.repository.ensure_system_tasks()
        await self.executor.init()
        await self.dispatcher.init()
        if self.alarms is not None and self.auto_start:
            self.alarms.start()
        self._initialized = True
        logger.info("自动化服务初始化完成")

    async def handle_event(
        self, event_type: EventType, event_data: Optional[Mapping[str, Any]] = None
    ) -> List[Tuple[str, TaskExecutionResult]]:
        await self.ensure_initialized()
        return await self.dispatcher.handle_event_trigger(event_type, event_data)

    async def handle_alarm(self, name: str) -> Optional[TaskExecutionResult]:
        await self.ensure_initialized()
        return await self.dispatcher.handle_alarm(name)

    async def execute_task(self, task_id: str) -> TaskExecutionResult:
        await self.ensure_initialized()
        return await self.executor.execute_task(task_id)

    async def execute_task_with_selections(self, task_id: str, selections: Sequence[Any]) -> TaskExecutionResult:
        await self.ensure_initialized()
        return await self.executor.execute_task_with_selections(task_id, selections)

    def stop(self) -> None:
        try:
            if self.alarms is not None:
                self.alarms.stop()
        finally:
            self._initialized = False
            self._close_store()

    # ---- construction ----
    def _create_store(self, cfg: Dict[str, Any]) -> KeyValueStoreProtocol:
        kind = str(cfg.get("kind", "duckdb")).lower()
        if kind == "memory":
            return MemoryKeyValueStore()
        path_value = cfg.get("path")
        db_path = Path(path_value).expanduser() if path_value else None
        return DuckDBKeyValueStore(db_path=db_path)

    @staticmethod
    def _wrap_store(store: KeyValueStoreProtocol, cfg: Dict[str, Any]) -> KeyValueStoreProtocol:
        return RetryingKeyValueStore(
            store,
            attempts=int(cfg.get("retry_attempts", 3)),
            base_delay=float(cfg.get("retry_base_delay", 0.2)),
            max_delay=float(cfg.get("retry_max_delay", 1.0)),
        )

    @staticmethod
    def _executor_config(cfg: Dict[str, Any]) -> ExecutorConfig:
        defaults = ExecutorConfig()
        return ExecutorConfig(
            max_retries=int(cfg.get("max_retries", defaults.max_retries)),
            retry_delay=float(cfg.get("retry_delay", defaults.retry_delay)),
            timeout=float(cfg.get("timeout", defaults.timeout)),
            max_history_length=int(cfg.get("max_history_length", defaults.max_history_length)),
        )

    def _create_handlers(self, organize_cfg: Dict[str, Any]) -> Tuple[List[ActionHandler], CustomActionHandler]:
        custom = CustomActionHandler()
        handlers: List[ActionHandler] = [
            BackupHandler(self.bookmarks, self.credentials, self.remote, status_store=self.store),
            OrganizeHandler(
                self.bookmarks,
                validate_timeout=float(organize_cfg.get("validate_timeout", 10.0)),
                validate_concurrency=int(organize_cfg.get("validate_concurrency", 5)),
            ),
            PushHandler(self.bookmarks, self.credentials, self.remote, status_store=self.store),
            custom,
        ]
        return handlers, custom

    def _close_store(self) -> None:
        close = getattr(self.raw_store, "close", None)
        if close is not None:
            with suppress(Exception):
                close()


__all__ = ["AutomationService"]
