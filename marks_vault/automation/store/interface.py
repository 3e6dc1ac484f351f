"""Protocol shared by the key-value stores backing the automation engine."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

ChangeListener = Callable[[str, Optional[Any], Optional[Any]], Awaitable[None]]


@runtime_checkable
class KeyValueStoreProtocol(Protocol):
    """Async JSON key-value store with change notifications.

    Values are JSON-compatible structures. ``get`` returns ``None`` for a
    missing key. Listeners receive ``(key, old_value, new_value)`` after a
    successful write.
    """

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def remove(self, key: str) -> None: ...

    def add_listener(self, listener: ChangeListener) -> None: ...


__all__ = ["ChangeListener", "KeyValueStoreProtocol"]
