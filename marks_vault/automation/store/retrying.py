"""Retry wrapper for key-value stores."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from attrs import define

from marks_vault.automation.errors import StorageError
from marks_vault.automation.store.interface import ChangeListener, KeyValueStoreProtocol

logger = logging.getLogger(__name__)

T = TypeVar("T")


@define(slots=True)
class RetryingKeyValueStore:
    """Retries failed store calls with a doubling delay, then raises StorageError."""

    inner: KeyValueStoreProtocol
    attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 1.0

    async def get(self, key: str) -> Optional[Any]:
        return await self._retry(f"读取 {key}", lambda: self.inner.get(key))

    async def set(self, key: str, value: Any) -> None:
        await self._retry(f"写入 {key}", lambda: self.inner.set(key, value))

    async def remove(self, key: str) -> None:
        await self._retry(f"删除 {key}", lambda: self.inner.remove(key))

    def add_listener(self, listener: ChangeListener) -> None:
        self.inner.add_listener(listener)

    async def _retry(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        attempts = max(1, int(self.attempts))
        delay = self.base_delay
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except StorageError:
                raise
            except Exception as exc:  # pylint: disable=broad-except
                if attempt >= attempts:
                    raise StorageError(f"存储操作失败({label}): {exc}") from exc
                logger.warning("存储操作失败(%s)，第 %d 次重试: %s", label, attempt, exc)
                await asyncio.sleep(min(delay, self.max_delay))
                delay *= 2
        raise StorageError(f"存储操作失败({label})")  # pragma: no cover


__all__ = ["RetryingKeyValueStore"]
