"""MarksVault task automation engine."""

from .dispatcher import TriggerDispatcher
from .errors import (
    CredentialError,
    InvalidStateError,
    StorageError,
    TaskError,
    TaskNotFoundError,
    TransientError,
)
from .executor import ExecutorConfig, TaskExecutor, is_retryable_error
from .models import Task, TaskExecutionResult, TaskStatus
from .repository import TaskRepository
from .runtime import AutomationService
from .store.duckdb_store import DuckDBKeyValueStore
from .store.memory import MemoryKeyValueStore

__all__ = [
    "AutomationService",
    "CredentialError",
    "DuckDBKeyValueStore",
    "ExecutorConfig",
    "InvalidStateError",
    "MemoryKeyValueStore",
    "StorageError",
    "Task",
    "TaskError",
    "TaskExecutionResult",
    "TaskExecutor",
    "TaskNotFoundError",
    "TaskRepository",
    "TaskStatus",
    "TransientError",
    "TriggerDispatcher",
    "is_retryable_error",
]
