"""Key-value store backends."""
from marks_vault.automation.store.duckdb_store import DuckDBKeyValueStore
from marks_vault.automation.store.interface import ChangeListener, KeyValueStoreProtocol
from marks_vault.automation.store.memory import MemoryKeyValueStore
from marks_vault.automation.store.retrying import RetryingKeyValueStore

__all__ = [
    "ChangeListener",
    "KeyValueStoreProtocol",
    "MemoryKeyValueStore",
    "DuckDBKeyValueStore",
    "RetryingKeyValueStore",
]
