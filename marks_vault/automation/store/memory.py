"""In-memory key-value store for testing and prototyping."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from attrs import define, field

from marks_vault.automation.store.interface import ChangeListener

logger = logging.getLogger(__name__)


@define(slots=True)
class MemoryKeyValueStore:
    """Values are held as JSON text, so reads return fresh copies."""

    _data: Dict[str, str] = field(factory=dict, init=False)
    _listeners: List[ChangeListener] = field(factory=list, init=False)

    async def get(self, key: str) -> Optional[Any]:
        return self._load(key)

    async def set(self, key: str, value: Any) -> None:
        old = self._load(key)
        self._data[key] = json.dumps(value, ensure_ascii=False)
        await _notify(self._listeners, key, old, self._load(key))

    async def remove(self, key: str) -> None:
        old = self._load(key)
        if self._data.pop(key, None) is not None:
            await _notify(self._listeners, key, old, None)

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def keys(self) -> List[str]:
        return list(self._data)

    def _load(self, key: str) -> Optional[Any]:
        text = self._data.get(key)
        return json.loads(text) if text is not None else None


async def _notify(listeners: List[ChangeListener], key: str, old: Any, new: Any) -> None:
    for listener in list(listeners):
        try:
            await listener(key, old, new)
        except Exception:  # pylint: disable=broad-except
            logger.exception("存储变更监听器执行失败: %s", key)


__all__ = ["MemoryKeyValueStore"]
