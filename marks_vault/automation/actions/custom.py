"""User-registered custom actions."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from attrs import define, field

from marks_vault.automation.actions.base import ActionHandler
from marks_vault.automation.errors import InvalidStateError
from marks_vault.automation.models import Action, ActionType, CustomAction, Task, TaskExecutionResult, now_ms

logger = logging.getLogger(__name__)

CustomCallable = Callable[[Task, Mapping[str, Any]], Awaitable[Optional[str]]]


@define(slots=False)
class CustomActionHandler(ActionHandler):
    """Dispatches ``CustomAction`` by ``config["name"]`` to a registered coroutine.

    The coroutine receives the task and the action config and may return a
    details string.
    """

    registry: Dict[str, CustomCallable] = field(factory=dict)
    action_types = frozenset({ActionType.CUSTOM})

    def register(self, name: str, func: CustomCallable) -> None:
        self.registry[name] = func

    async def execute(self, task: Task, action: Action) -> TaskExecutionResult:
        if not isinstance(action, CustomAction):
            raise InvalidStateError(f"不支持的任务类型: {action.type.value}")
        started = now_ms()
        name = str(action.config.get("name") or "")
        func = self.registry.get(name)
        if func is None:
            raise InvalidStateError(f"不支持的任务类型: custom/{name or '<未命名>'}")
        logger.info("执行自定义操作 %s (任务 %s)", name, task.id)
        details = await func(task, action.config)
        return self._success(details or f"自定义操作 {name} 执行完成", started)


__all__ = ["CustomActionHandler", "CustomCallable"]
